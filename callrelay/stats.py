from typing import Dict

from .registry import ConnectionRegistry, VisitorCounter


class StatsReporter:
    """Read-only counts for the /stats endpoint and the status log.

    Only reads a dict length and a set length, so it is safe to call from the
    HTTP thread while the event loop mutates state.
    """

    def __init__(self, registry: ConnectionRegistry, visitors: VisitorCounter):
        self.registry = registry
        self.visitors = visitors

    def snapshot(self) -> Dict[str, int]:
        return {
            "activeCount": self.registry.online_count(),
            "visitorCount": self.visitors.count,
        }
