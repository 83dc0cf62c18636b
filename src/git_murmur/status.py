import logging
import re
from dataclasses import dataclass, field

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)

_ESCAPES = {"a": 7, "b": 8, "t": 9, "n": 10, "v": 11, "f": 12, "r": 13}
_ESCAPE_RE = re.compile(r"\\([0-7]{3}|.)", re.DOTALL)


def unquote_path(name: str) -> str:
    """Undoes git's C-style quoting of unusual filenames.

    `"a b.txt"` becomes `a b.txt` and octal escapes such as `\\303\\251` are
    decoded as UTF-8 bytes. Unquoted names are returned unchanged.
    """
    if len(name) < 2 or not (name.startswith('"') and name.endswith('"')):
        return name

    raw = bytearray()
    pos = 0
    body = name[1:-1]
    for found in _ESCAPE_RE.finditer(body):
        raw += body[pos : found.start()].encode("utf-8")
        code = found.group(1)
        if len(code) == 3:
            raw.append(int(code, 8))
        else:
            raw += bytes([_ESCAPES[code]]) if code in _ESCAPES else code.encode("utf-8")
        pos = found.end()
    raw += body[pos:].encode("utf-8")
    return raw.decode("utf-8", errors="replace")


@dataclass
class StatusSummary:
    """Filenames touched by a sync, grouped by kind of change.

    Built fresh from git output on every pipeline run.

    Attributes:
        created (list[str]): Files added.
        modified (list[str]): Files edited or renamed.
        deleted (list[str]): Files removed.
    """

    created: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @classmethod
    def from_lines(cls, lines: list[str]) -> "StatusSummary":
        """Parses `git status --porcelain` or `git diff --name-status` output.

        Porcelain lines look like `XY path` (renames as `R  old -> new`);
        name-status lines are tab separated (`M\\tpath`, `R100\\told\\tnew`).
        Renames count as edits of the new name. Quoted names are unquoted.
        Untracked entries are logged and skipped.
        """
        summary = cls()
        for line in lines:
            if not line.strip():
                continue

            if "\t" in line:
                code, *paths = line.split("\t")
                filename = unquote_path(paths[-1]) if paths else ""
                code = code.strip()
            else:
                code = line[:2].strip()
                filename = line[3:]
                if " -> " in filename:
                    filename = filename.split(" -> ", 1)[1]
                filename = unquote_path(filename)

            if not code or not filename:
                logger.debug(f"Unparseable status line: {line!r}")
                continue

            kind = code[0]
            if kind == "A":
                summary.created.append(filename)
            elif kind in ("M", "R"):
                summary.modified.append(filename)
            elif kind == "D":
                summary.deleted.append(filename)
            elif kind == "?":
                logger.info(f"Untracked, needs git add: {filename}")
            else:
                logger.info(f"Other status {code}: {filename}")

        return summary

    def is_empty(self) -> bool:
        return not (self.created or self.modified or self.deleted)

    def render(self) -> str:
        """Formats the summary as one line, e.g. 'New: 2 Edit: c.txt'.

        A category with a single file shows its name, one with several shows
        the count, and an empty one is left out.
        """
        parts = []
        for label, names in (
            ("New", self.created),
            ("Edit", self.modified),
            ("Del", self.deleted),
        ):
            if len(names) == 1:
                parts.append(f"{label}: {names[0]}")
            elif len(names) > 1:
                parts.append(f"{label}: {len(names)}")
        return " ".join(parts)
