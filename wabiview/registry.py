"""
Hardcoded list of known WabiSabi coordinators.

There is no discovery: a new coordinator is added by editing this list
and shipping a release.
"""

from .models import CoordinatorEntry

KNOWN_COORDINATORS: tuple[CoordinatorEntry, ...] = (
    CoordinatorEntry(
        name="Kruw",
        url="https://coinjoin.kruw.io/",
        description="Kruw Coordinator",
    ),
    CoordinatorEntry(
        name="OpenCoordinator",
        url="https://api.opencoordinator.org/",
        description="Open Coordinator",
    ),
)


def normalize_url(url: str) -> str:
    return url.strip().rstrip("/")


class ManualCoordinatorRegistry:
    """Lookup helpers over the static coordinator table."""

    def __init__(self, entries: tuple[CoordinatorEntry, ...] = KNOWN_COORDINATORS):
        self._entries = entries

    def get_coordinators(self) -> list[CoordinatorEntry]:
        return list(self._entries)

    def get_by_url(self, url: str) -> CoordinatorEntry | None:
        wanted = normalize_url(url).lower()
        for entry in self._entries:
            if normalize_url(entry.url).lower() == wanted:
                return entry
        return None

    def get_by_name(self, name: str) -> CoordinatorEntry | None:
        wanted = name.lower()
        for entry in self._entries:
            if entry.name.lower() == wanted:
                return entry
        return None
