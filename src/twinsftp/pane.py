"""One side of the dual browser: location, listing and selection cursor."""

from __future__ import annotations

import logging
import posixpath
from types import ModuleType
from typing import Iterable, List, Optional, Tuple

from .fileops import FileEntry
from .transfers import Side

logger = logging.getLogger(__name__)


class Pane:
    """Location, sorted listing and cursor of one side.

    ``selected_index`` always indexes the visible (hidden-filtered) rows and
    is ``None`` exactly when there is nothing to show. Navigation methods
    never touch the filesystem: :meth:`enter_selected` and :meth:`go_up`
    only return the location to load, and the listing comes back later via
    :meth:`apply_listing`.
    """

    def __init__(
        self,
        side: Side,
        location: str = "/",
        *,
        show_hidden: bool = False,
        pathmod: ModuleType = posixpath,
    ) -> None:
        self.side = side
        self.location = location
        self.show_hidden = show_hidden
        self.pathmod = pathmod
        self.loading = False
        self.error: Optional[str] = None
        self._entries: List[FileEntry] = []
        self._visible: List[FileEntry] = []
        self._selected: Optional[int] = None

    # -- read access -------------------------------------------------------

    @property
    def entries(self) -> Tuple[FileEntry, ...]:
        return tuple(self._entries)

    @property
    def visible_entries(self) -> Tuple[FileEntry, ...]:
        return tuple(self._visible)

    @property
    def visible_count(self) -> int:
        return len(self._visible)

    @property
    def selected_index(self) -> Optional[int]:
        return self._selected

    @property
    def selected_entry(self) -> Optional[FileEntry]:
        if self._selected is None:
            return None
        return self._visible[self._selected]

    # -- navigation --------------------------------------------------------

    def move_selection(self, delta: int) -> None:
        if not self._visible:
            return
        current = self._selected or 0
        self._selected = min(max(current + delta, 0), len(self._visible) - 1)

    def select_first(self) -> None:
        self._selected = 0 if self._visible else None

    def select_last(self) -> None:
        self._selected = len(self._visible) - 1 if self._visible else None

    def enter_selected(self) -> Optional[str]:
        """Return the directory to change into, or ``None`` for files."""
        entry = self.selected_entry
        if entry is None or not entry.is_dir:
            return None
        return self.pathmod.join(self.location, entry.name)

    def go_up(self) -> Optional[str]:
        """Return the parent location, or ``None`` at the root."""
        sep = self.pathmod.sep
        trimmed = self.location.rstrip(sep) or sep
        parent = self.pathmod.dirname(trimmed) or sep
        if parent == self.location or trimmed == sep:
            return None
        return parent

    def toggle_hidden(self) -> None:
        previous = self.selected_entry
        self.show_hidden = not self.show_hidden
        self._refilter()
        self._reselect(previous, fallback_index=0)

    def apply_listing(self, entries: Iterable[FileEntry], location: Optional[str] = None) -> None:
        """Replace the listing wholesale after a refresh completed."""
        moved = location is not None and location != self.location
        previous = None if moved else self.selected_entry
        old_index = None if moved else self._selected
        if location is not None:
            self.location = location
        self._entries = sorted(entries, key=lambda entry: entry.sort_key)
        self.loading = False
        self.error = None
        self._refilter()
        self._reselect(previous, fallback_index=old_index or 0)
        logger.debug(f"{self.side.value} pane shows {len(self._visible)} of "
                     f"{len(self._entries)} entries in {self.location}")

    def fail_listing(self, message: str) -> None:
        """Record a listing failure; location and entries stay as they were."""
        self.loading = False
        self.error = message

    # -- helpers -------------------------------------------------------------

    def _is_visible(self, entry: FileEntry) -> bool:
        return self.show_hidden or not entry.is_hidden

    def _refilter(self) -> None:
        self._visible = [entry for entry in self._entries if self._is_visible(entry)]

    def _reselect(self, previous: Optional[FileEntry], fallback_index: int) -> None:
        if not self._visible:
            self._selected = None
            return
        if previous is not None:
            for index, entry in enumerate(self._visible):
                if entry.name == previous.name:
                    self._selected = index
                    return
        self._selected = min(max(fallback_index, 0), len(self._visible) - 1)
