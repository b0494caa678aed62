"""
Ports: Abstract interfaces for external dependencies.

The engine depends only on these interfaces, not on concrete adapters.
"""

from metric_sentinel.ports.sample_source import SampleSourcePort

__all__ = ["SampleSourcePort"]
