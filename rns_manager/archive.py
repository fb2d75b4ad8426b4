from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import Path
import re
import tarfile
from typing import Iterable, Sequence

from rns_manager.core import CONFIG_DIRECTORIES
from rns_manager.logs import log_security


logger = logging.getLogger(__name__)

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
_SEPARATORS = re.compile(r"[\\/]")


class EntryClass(str, Enum):
    SAFE = "safe"
    TRAVERSAL = "traversal"
    ABSOLUTE = "absolute"
    SPECIAL = "special"


@dataclass(frozen=True)
class ArchiveEntry:
    raw_path: str
    classification: EntryClass
    link_target: str | None = None

    @property
    def safe(self) -> bool:
        return self.classification == EntryClass.SAFE

    def top_level(self) -> str | None:
        for part in _SEPARATORS.split(self.raw_path):
            if part and part != ".":
                return part
        return None

    def describe(self) -> str:
        if self.link_target:
            return f"{self.raw_path} -> {self.link_target}"
        return self.raw_path


@dataclass
class ArchiveReport:
    archive: str
    entries: list[ArchiveEntry] = field(default_factory=list)
    all_safe: bool = False
    has_expected_content: bool = False
    readable: bool = True
    error: str | None = None

    @property
    def unsafe_entries(self) -> list[ArchiveEntry]:
        return [entry for entry in self.entries if not entry.safe]
def classify_path(raw_path: str) -> EntryClass:
    parts = _SEPARATORS.split(raw_path)
    if ".." in parts:
        return EntryClass.TRAVERSAL
    if raw_path.startswith(("/", "\\")) or _DRIVE_PREFIX.match(raw_path):
        return EntryClass.ABSOLUTE
    return EntryClass.SAFE


def classify_member(member: tarfile.TarInfo) -> EntryClass:
    """Classify a member by its name and, for links, by where the link points."""
    classification = classify_path(member.name)
    if classification != EntryClass.SAFE:
        return classification
    if member.issym() or member.islnk():
        if not member.linkname:
            return EntryClass.TRAVERSAL
        return classify_path(member.linkname)
    if not (member.isfile() or member.isdir()):
        return EntryClass.SPECIAL
    return EntryClass.SAFE


def _report(entries: list[ArchiveEntry], expected: Sequence[str], archive: str) -> ArchiveReport:
    return ArchiveReport(
        archive=archive,
        entries=entries,
        all_safe=all(entry.safe for entry in entries),
        has_expected_content=any(entry.safe and entry.top_level() in expected for entry in entries),
    )


def classify_entries(
    names: Iterable[str],
    expected: Sequence[str] = CONFIG_DIRECTORIES,
    archive: str = "",
) -> ArchiveReport:
    entries = [ArchiveEntry(raw_path=name, classification=classify_path(name)) for name in names]
    return _report(entries, expected, archive)


def classify_members(
    members: Iterable[tarfile.TarInfo],
    expected: Sequence[str] = CONFIG_DIRECTORIES,
    archive: str = "",
) -> ArchiveReport:
    entries = [
        ArchiveEntry(
            raw_path=member.name,
            classification=classify_member(member),
            link_target=member.linkname or None,
        )
        for member in members
    ]
    return _report(entries, expected, archive)


def _list_members(path: Path) -> list[tarfile.TarInfo]:
    with tarfile.open(path, "r:*") as archive:
        return archive.getmembers()


class ArchiveValidator:
    """Classifies an untrusted archive's members. Never extracts.

    Link members are judged by their target as well as their name: a symlink
    or hardlink pointing at an absolute path or through ``..`` is rejected
    like a member stored under that path. Device nodes and FIFOs are rejected
    outright.
    """

    def __init__(self, expected: Sequence[str] = CONFIG_DIRECTORIES) -> None:
        self.expected = tuple(expected)

    def validate(self, archive_path: Path) -> ArchiveReport:
        archive_path = Path(archive_path)
        try:
            members = _list_members(archive_path)
        except (tarfile.TarError, OSError, EOFError) as exc:
            logger.error("Could not read archive %s: %s", archive_path, exc)
            return ArchiveReport(archive=str(archive_path), readable=False, error=str(exc))

        report = classify_members(members, self.expected, archive=str(archive_path))
        if not report.all_safe:
            sample = ", ".join(entry.describe() for entry in report.unsafe_entries[:5])
            log_security(
                logger,
                "Rejected archive with invalid paths (absolute, traversal or special file): %s [%s]",
                archive_path,
                sample,
            )
        elif not report.has_expected_content:
            logger.warning("Archive %s does not appear to contain Reticulum configuration", archive_path)
        return report
