"""Expand a selected file or directory into a batch of transfer tasks."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import FilesystemError, PlanningError
from .fileops import FileEntry, Filesystem
from .transfers import Direction, TransferTask, new_batch_id

logger = logging.getLogger(__name__)

_UNSAFE_NAMES = ("", ".", "..")


@dataclass
class TransferPlan:
    """Result of planning one user-initiated transfer."""

    batch_id: str
    direction: Direction
    source_path: str
    destination_path: str
    tasks: List[TransferTask] = field(default_factory=list)
    created_directories: List[str] = field(default_factory=list)
    failures: List[PlanningError] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(task.total_bytes for task in self.tasks)

    @property
    def is_empty(self) -> bool:
        return not self.tasks

    @property
    def cancelled(self) -> bool:
        return bool(self.skipped)

    @property
    def title(self) -> str:
        return f'{self.direction.verb} "{self.source_path}"'


class TransferPlanner:
    """Walk a source tree and mirror it under a destination base.

    Destination directories are created while walking, always before the
    files below them are turned into tasks. A directory that cannot be read
    or created is recorded in :attr:`TransferPlan.failures` and the walk
    carries on with its siblings.

    Setting ``cancel`` stops the walk before the next directory is created
    or listed; whatever was not reached yet ends up in
    :attr:`TransferPlan.skipped`.
    """

    def __init__(self, source_fs: Filesystem, destination_fs: Filesystem) -> None:
        self.source_fs = source_fs
        self.destination_fs = destination_fs

    def plan(
        self,
        direction: Direction,
        source_dir: str,
        entry: FileEntry,
        destination_base: str,
        *,
        batch_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> TransferPlan:
        source_path = self.source_fs.join(source_dir, entry.name)
        plan = TransferPlan(
            batch_id=batch_id or new_batch_id(),
            direction=direction,
            source_path=source_path,
            destination_path=self.destination_fs.join(destination_base, entry.name),
        )
        logger.info(f"Planning {direction.value} of {source_path} into {destination_base}")
        cancel = cancel or threading.Event()
        self._visit(plan, entry, source_dir, destination_base, destination_base, cancel)
        logger.info(
            f"Planned batch {plan.batch_id}: {len(plan.tasks)} files, "
            f"{len(plan.created_directories)} new directories, {len(plan.failures)} failures, "
            f"{len(plan.skipped)} skipped"
        )
        return plan

    def _visit(
        self,
        plan: TransferPlan,
        entry: FileEntry,
        source_dir: str,
        destination_dir: str,
        destination_base: str,
        cancel: threading.Event,
    ) -> None:
        source_path = self.source_fs.join(source_dir, entry.name)
        if cancel.is_set():
            plan.skipped.append(source_path)
            return
        if entry.name in _UNSAFE_NAMES:
            self._fail(plan, source_path, "unsafe file name")
            return
        destination_path = self.destination_fs.join(destination_dir, entry.name)
        if not self._is_within(destination_path, destination_base):
            self._fail(plan, source_path, "destination escapes the target directory")
            return

        if not entry.is_dir:
            plan.tasks.append(TransferTask(
                batch_id=plan.batch_id,
                direction=plan.direction,
                source_path=source_path,
                destination_path=destination_path,
                total_bytes=entry.size,
            ))
            return

        try:
            if self.destination_fs.make_directory(destination_path):
                plan.created_directories.append(destination_path)
        except FilesystemError as exc:
            self._fail(plan, destination_path, exc.message)
            return
        if cancel.is_set():
            plan.skipped.append(source_path)
            return
        try:
            children = self.source_fs.list_directory(source_path)
        except FilesystemError as exc:
            self._fail(plan, source_path, exc.message)
            return

        # Files of this directory first, then recurse into subdirectories.
        children.sort(key=lambda child: child.sort_key)
        for child in sorted(children, key=lambda child: child.is_dir):
            self._visit(plan, child, source_path, destination_path, destination_base, cancel)

    def _is_within(self, path: str, base: str) -> bool:
        pathmod = self.destination_fs.pathmod
        normalized = pathmod.normpath(path)
        root = pathmod.normpath(base)
        if normalized == root:
            return False
        return normalized.startswith(root.rstrip(pathmod.sep) + pathmod.sep)

    @staticmethod
    def _fail(plan: TransferPlan, path: str, reason: str) -> None:
        logger.warning(f"Planning failure in batch {plan.batch_id}: {path}: {reason}")
        plan.failures.append(PlanningError(path, reason))
