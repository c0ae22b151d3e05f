"""Curses front end: maps keys to :class:`KeyEvent` and paints snapshots."""

from __future__ import annotations

import curses
import logging
from typing import Dict, List, Optional, Tuple

from .controller import AppSnapshot, BatchView, Controller, KeyEvent, Lifecycle, PaneView
from .fileops import FileEntry, format_size, format_time
from .messages import Level
from .transfers import Side

logger = logging.getLogger(__name__)

HIGHLIGHT_SYMBOL = ">>"
WIDE_PANE = 60

KEY_BINDINGS: Dict[int, KeyEvent] = {
    curses.KEY_UP: KeyEvent.UP,
    ord("k"): KeyEvent.UP,
    curses.KEY_DOWN: KeyEvent.DOWN,
    ord("j"): KeyEvent.DOWN,
    curses.KEY_PPAGE: KeyEvent.PAGE_UP,
    curses.KEY_NPAGE: KeyEvent.PAGE_DOWN,
    curses.KEY_HOME: KeyEvent.HOME,
    ord("g"): KeyEvent.HOME,
    curses.KEY_END: KeyEvent.END,
    ord("G"): KeyEvent.END,
    curses.KEY_ENTER: KeyEvent.ENTER,
    10: KeyEvent.ENTER,
    13: KeyEvent.ENTER,
    curses.KEY_BACKSPACE: KeyEvent.BACK,
    127: KeyEvent.BACK,
    8: KeyEvent.BACK,
    ord("-"): KeyEvent.BACK,
    9: KeyEvent.SWITCH_PANE,
    curses.KEY_LEFT: KeyEvent.SWITCH_PANE,
    curses.KEY_RIGHT: KeyEvent.SWITCH_PANE,
    ord("h"): KeyEvent.SWITCH_PANE,
    ord("l"): KeyEvent.SWITCH_PANE,
    ord(" "): KeyEvent.TRANSFER,
    ord("."): KeyEvent.TOGGLE_HIDDEN,
    ord("r"): KeyEvent.REFRESH,
    ord("c"): KeyEvent.CANCEL_BATCH,
    ord("d"): KeyEvent.DISMISS,
    ord("?"): KeyEvent.HELP,
    ord("q"): KeyEvent.QUIT,
    ord("Q"): KeyEvent.FORCE_QUIT,
}

HELP_LINES: Tuple[Tuple[str, str], ...] = (
    ("Up/Down, j/k", "move the cursor"),
    ("PgUp/PgDn, Home/End", "move by a page / to the ends"),
    ("Enter", "open the selected directory"),
    ("Backspace, -", "go to the parent directory"),
    ("Tab, Left/Right, h/l", "switch between local and remote"),
    ("Space", "copy the selection to the other side"),
    (".", "show or hide hidden files"),
    ("r", "reload both panes"),
    ("c", "cancel the newest transfer"),
    ("d", "dismiss finished transfers"),
    ("?", "toggle this help"),
    ("q", "quit once transfers finish"),
    ("Q", "quit now, cancelling transfers"),
)

FOOTER = "Space:copy  Enter:open  Bksp:up  Tab:switch  .:hidden  c:cancel  ?:help  q:quit"


def fit_label(title: str, info: str, width: int) -> str:
    """Left-aligned ``title`` and right-aligned ``info`` in ``width`` columns.

    When there is no room for both, only the (truncated) title is kept.
    """
    if width <= 0:
        return ""
    if len(info) + 5 >= width:
        return title[:width]
    title_width = width - len(info) - 1
    return f"{title[:title_width]:<{title_width}} {info}"


def progress_label(batch: BatchView, width: int) -> str:
    state = " (cancelling)" if batch.cancel_requested and not batch.finished else ""
    return fit_label(batch.title + state, batch.info, width)


def entry_label(entry: FileEntry, width: int) -> str:
    """Name on the left, size (and mtime on wide panes) on the right."""
    info = "" if entry.is_dir else format_size(entry.size)
    if width >= WIDE_PANE and entry.modified:
        info = f"{info:>8}  {format_time(entry.modified)}"
    if not info:
        return entry.label[:width]
    return fit_label(entry.label, info, width)


def scroll_offset(selected: Optional[int], offset: int, height: int) -> int:
    """Smallest scroll change that keeps ``selected`` inside the window."""
    if selected is None or height <= 0:
        return 0
    if selected < offset:
        return selected
    if selected >= offset + height:
        return selected - height + 1
    return offset


class CursesUI:
    """Renderer and key source for :meth:`Controller.run`."""

    def __init__(self, stdscr, ticks_per_second: int = 30) -> None:
        self._stdscr = stdscr
        self._offsets: Dict[str, int] = {}
        try:
            curses.curs_set(0)
        except curses.error:
            pass
        stdscr.keypad(True)
        stdscr.timeout(max(1, int(1000 / ticks_per_second)))
        self._colors = curses.has_colors()
        if self._colors:
            curses.start_color()
            curses.use_default_colors()
            curses.init_pair(1, curses.COLOR_BLACK, curses.COLOR_YELLOW)
            curses.init_pair(2, curses.COLOR_BLUE, -1)
            curses.init_pair(3, curses.COLOR_YELLOW, -1)
            curses.init_pair(4, curses.COLOR_RED, -1)
            curses.init_pair(5, curses.COLOR_CYAN, -1)

    def _attr(self, pair: int, fallback: int = curses.A_NORMAL) -> int:
        return curses.color_pair(pair) if self._colors else fallback

    # -- input ---------------------------------------------------------------

    def read_key(self) -> Optional[KeyEvent]:
        """Wait at most one tick for a key press."""
        key = self._stdscr.getch()
        if key == -1 or key == curses.KEY_RESIZE:
            return None
        return KEY_BINDINGS.get(key)

    # -- output --------------------------------------------------------------

    def _put(self, y: int, x: int, text: str, attr: int = curses.A_NORMAL) -> None:
        try:
            self._stdscr.addstr(y, x, text, attr)
        except curses.error:
            # Writing the bottom-right cell always raises; the text is drawn.
            pass

    def draw(self, snapshot: AppSnapshot) -> None:
        self._stdscr.erase()
        rows, cols = self._stdscr.getmaxyx()
        bottom = rows - 1
        self._put(bottom, 0, fit_label(FOOTER, self._status(snapshot), cols - 1), curses.A_DIM)

        lines = self._status_lines(snapshot, cols - 1)
        # Keep at least a few rows for the panes.
        room = max(rows - 5, 0)
        for text, attr in reversed(lines[max(len(lines) - room, 0):] if room else []):
            bottom -= 1
            self._put(bottom, 0, text, attr)

        top = 0
        if snapshot.banner:
            self._put(0, 0, snapshot.banner[:cols - 1].ljust(cols - 1),
                      self._attr(4, curses.A_BOLD) | curses.A_REVERSE)
            top = 1

        height = bottom - top
        half = cols // 2
        self._draw_pane(snapshot.local, top, 0, height, half)
        self._draw_pane(snapshot.remote, top, half, height, cols - half)

        self._stdscr.noutrefresh()
        if snapshot.show_help:
            self._draw_help(rows, cols)
        curses.doupdate()

    @staticmethod
    def _status(snapshot: AppSnapshot) -> str:
        if snapshot.lifecycle is Lifecycle.QUITTING:
            return "waiting for transfers"
        return ""

    def _status_lines(self, snapshot: AppSnapshot, width: int) -> List[Tuple[str, int]]:
        lines: List[Tuple[str, int]] = []
        for title in snapshot.planning:
            lines.append((fit_label(title, "scanning…", width), self._attr(2)))
        for batch in snapshot.batches:
            attr = self._attr(4) if batch.problems or batch.partial_files else self._attr(2)
            lines.append((progress_label(batch, width), attr))
            for path, reason in batch.problems:
                lines.append((f"  {path}: {reason}"[:width], self._attr(4)))
        level_attr = {Level.INFO: curses.A_NORMAL, Level.WARNING: self._attr(3),
                      Level.ERROR: self._attr(4, curses.A_BOLD)}
        for message in snapshot.messages:
            lines.append((message.text[:width], level_attr[message.level]))
        return lines

    def _draw_pane(self, view: PaneView, y: int, x: int, height: int, width: int) -> None:
        if height < 3 or width < 4:
            return
        border = self._attr(5) if view.active else curses.A_NORMAL
        try:
            win = self._stdscr.derwin(height, width, y, x)
            win.attron(border)
            win.box()
            win.attroff(border)
        except curses.error:
            return
        side = "Local" if view.side is Side.LOCAL else "Remote"
        flags = " [loading]" if view.loading else ""
        title = f" {side}: {view.location}{flags} "
        self._put(y, x + 1, title[:width - 2], border | (curses.A_BOLD if view.active else 0))

        inner_height = height - 2
        inner_width = width - 2
        if view.error:
            self._put(y + 1, x + 1, view.error[:inner_width], self._attr(4))
            y += 1
            inner_height -= 1

        key = view.side.value
        offset = scroll_offset(view.selected_index, self._offsets.get(key, 0), inner_height)
        self._offsets[key] = offset
        label_width = inner_width - len(HIGHLIGHT_SYMBOL)
        for row, entry in enumerate(view.entries[offset:offset + inner_height]):
            index = offset + row
            selected = index == view.selected_index
            prefix = HIGHLIGHT_SYMBOL if selected else " " * len(HIGHLIGHT_SYMBOL)
            attr = curses.A_BOLD if entry.is_dir else curses.A_NORMAL
            if selected and view.active:
                attr = self._attr(1, curses.A_REVERSE)
            self._put(y + 1 + row, x + 1, prefix + entry_label(entry, label_width).ljust(label_width), attr)

    def _draw_help(self, rows: int, cols: int) -> None:
        key_width = max(len(keys) for keys, _ in HELP_LINES)
        lines = [f"{keys:<{key_width}}  {text}" for keys, text in HELP_LINES]
        height = min(len(lines) + 2, rows)
        width = min(max(len(line) for line in lines) + 4, cols)
        try:
            win = curses.newwin(height, width, max((rows - height) // 2, 0), max((cols - width) // 2, 0))
        except curses.error:
            return
        win.erase()
        win.box()
        try:
            win.addstr(0, 2, " Help "[:width - 4])
            for row, line in enumerate(lines[:height - 2]):
                win.addstr(row + 1, 2, line[:width - 4])
        except curses.error:
            pass
        win.noutrefresh()


def run_curses(controller: Controller, ticks_per_second: int = 30) -> int:
    """Run ``controller`` inside a curses session and return its exit code."""
    return curses.wrapper(lambda stdscr: controller.run(CursesUI(stdscr, ticks_per_second)))
