"""
Orphan artifact pass.

Lists the files under the managed storage root and moves every file that no store
references into the quarantine subtree. Files are never deleted here; emptying
the quarantine is an operator decision.
"""

import asyncio
import os
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, List, Sequence, Set

import aiofiles.os

from ..models import context_keys as keys
from ..models.execution import ExecutionContext, utc_now
from ..stores.base import PathReferenceSource
from ..utils.logger import get_logger
from .reconciler import PassResult, ReconciliationPass


def normalize_reference(reference: str) -> str:
    """Unify separators and strip leading './' and '/' from a recorded path."""
    normalized = reference.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def is_referenced(relative_path: str, references: Iterable[str]) -> bool:
    """
    Whether a stored file matches any recorded reference.

    Stores may record absolute, relative or partial paths, so a file matches when
    either path ends with the other on a segment boundary. "x/report.pdf" is
    matched by "/srv/uploads/x/report.pdf" or "report.pdf", never by
    "old_report.pdf" or "y/report.pdf".
    """
    file_parts = PurePosixPath(relative_path).parts
    for reference in references:
        if not reference:
            continue
        reference_parts = PurePosixPath(reference).parts
        shorter = min(len(file_parts), len(reference_parts))
        if file_parts[-shorter:] == reference_parts[-shorter:]:
            return True
    return False


class OrphanArtifactScanner(ReconciliationPass):
    """
    Quarantines unreferenced uploads.

    Args:
        storage_root: Directory holding uploaded files
        quarantine_dir: Quarantine subtree, relative to storage_root
        sources: Stores recording file paths; all of them must answer
        clock: Source of the collision prefix timestamp
    """

    name = "orphan-artifacts"

    def __init__(self, storage_root: str, quarantine_dir: str,
                 sources: Sequence[PathReferenceSource],
                 clock: Callable[[], datetime] = utc_now):
        self.storage_root = Path(storage_root)
        self.quarantine_root = self.storage_root / quarantine_dir
        self.sources = list(sources)
        self.clock = clock
        self.logger = get_logger(__name__)

    async def references(self) -> Set[str]:
        """Union of the paths recorded by every source."""
        references: Set[str] = set()
        for source in self.sources:
            paths = await source.document_paths()
            references.update(normalize_reference(path) for path in paths if path)
            self.logger.debug("Collected path references", extra={
                "source": source.name,
                "count": len(paths)
            })
        return references

    def list_files(self) -> List[str]:
        """Relative POSIX paths of every file under the root, quarantine excluded."""
        files = []
        for directory, subdirectories, file_names in os.walk(self.storage_root):
            current = Path(directory)
            subdirectories[:] = [
                name for name in subdirectories if current / name != self.quarantine_root
            ]
            for file_name in file_names:
                files.append((current / file_name).relative_to(self.storage_root).as_posix())
        return sorted(files)

    async def run(self, context: ExecutionContext) -> PassResult:
        result = PassResult(self.name)
        if not self.storage_root.is_dir():
            self.logger.warning("Storage root not found, nothing to scan", extra={
                "storage_root": str(self.storage_root)
            })
            return result

        # References first: a source failure must abort before anything moves.
        references = await self.references()
        loop = asyncio.get_running_loop()
        files = await loop.run_in_executor(None, self.list_files)

        for relative_path in files:
            result.checked += 1
            if is_referenced(relative_path, references):
                continue
            target = await self.quarantine(relative_path)
            result.anomalies += 1
            context.increment(keys.ORPHANED_DOCUMENTS)
            context.increment(keys.TOTAL_ANOMALIES)
            context.increment(keys.MANUAL_INTERVENTION)
            context.append(keys.ORPHANED_FILES, relative_path)
            self.logger.warning("Orphaned file quarantined", extra={
                "file": relative_path,
                "quarantined_as": str(target)
            })

        result.details = {"orphaned_files": context.get(keys.ORPHANED_FILES)}
        return result

    async def quarantine(self, relative_path: str) -> Path:
        """Move one file into the quarantine subtree and return its new path."""
        source = self.storage_root / relative_path
        target = self.quarantine_root / relative_path
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        if await aiofiles.os.path.exists(target):
            stamp = self.clock().strftime("%Y%m%d%H%M%S")
            name = target.name
            target = target.with_name(f"{stamp}_{name}")
            counter = 1
            while await aiofiles.os.path.exists(target):
                target = target.with_name(f"{stamp}_{counter}_{name}")
                counter += 1
        await aiofiles.os.rename(source, target)
        return target
