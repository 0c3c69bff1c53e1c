#!/usr/bin/env python3
# git_precise.py
# Hunk- and line-level staging, unstaging and discarding for git
# Usage:
#   uv run git_precise.py status
#   uv run git_precise.py diff src/app.py [--staged]
#   uv run git_precise.py stage src/app.py 0 --lines 2,5-7
#   uv run git_precise.py unstage src/app.py 1
#   uv run git_precise.py discard src/app.py 0 --lines 3
#   uv run git_precise.py stage-all
#   uv run git_precise.py mcp  # Run as MCP server

import argparse
import asyncio
import dataclasses
import enum
import json
import logging
import os
import re
import stat
import subprocess
import sys
from collections.abc import Iterable
from typing import Any, ClassVar, Literal, Protocol

logger = logging.getLogger(__name__)

UNIFIED_DEFAULT = 3 # Context width for diffs that hunks are addressed against
BINARY_SNIFF_BYTES = 8000 # git looks for a NUL byte in this many leading bytes
NO_NEWLINE_MARKER = "\\ No newline at end of file"

FileStatus = Literal["added", "modified", "deleted", "renamed", "untracked"]

# ---------- Errors ----------

class StagingError(Exception):
    """Failure reported back to the caller as an unsuccessful StagingResult.

    Reads (get_file_diff, get_working_status) have no result value to carry
    it and raise it instead.
    """

class ValidationError(StagingError):
    """Bad hunk index, line selection or target file. Nothing was run."""

class ApplyFailure(StagingError):
    """git apply exited non-zero; the message is its diagnostic output."""

class IOFailure(StagingError):
    """Reading an untracked file failed."""

# ---------- Utility ----------

def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="surrogateescape")

async def run_capture(cmd: list[str], cwd: str | None = None, input_text: str | None = None) -> tuple[str, str, int]:
    """Run a command to completion and return (stdout, stderr, returncode).

    Output is decoded with surrogateescape so that bytes which are not valid
    UTF-8 survive a round trip back into a patch fed to git apply.
    """
    env = os.environ.copy()
    env.setdefault("LC_ALL", "C")
    env.setdefault("LANG", "C")
    logger.debug("Running %s (cwd=%s)", cmd, cwd)
    try:
        p = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise StagingError(f"Failed to run {cmd[0]}: {e.strerror or e}") from e
    data = input_text.encode("utf-8", errors="surrogateescape") if input_text is not None else None
    out, err = await p.communicate(data)
    return _decode(out), _decode(err), p.returncode

async def run(cmd: list[str], cwd: str | None = None, check: bool = True, input_text: str | None = None) -> str:
    out, err, code = await run_capture(cmd, cwd=cwd, input_text=input_text)
    if check and code != 0:
        raise subprocess.CalledProcessError(code, cmd, out, err)
    return out

def split_lines(text: str) -> list[str]:
    """Split on LF only. A CR stays part of the line so CRLF files patch cleanly."""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines

def detect_new_file_mode(full_path: str) -> str:
    try:
        st = os.stat(full_path)
        if st.st_mode & stat.S_IXUSR:
            return "100755"
    except FileNotFoundError:
        pass
    return "100644"

# ---------- Data model ----------

@dataclasses.dataclass(frozen=True)
class ContextLine:
    content: str
    old_line_number: int
    new_line_number: int
    line_index: int
    no_newline: bool = False
    type: ClassVar[str] = "context"

@dataclasses.dataclass(frozen=True)
class AddLine:
    content: str
    new_line_number: int
    line_index: int
    no_newline: bool = False
    type: ClassVar[str] = "add"

@dataclasses.dataclass(frozen=True)
class DeleteLine:
    content: str
    old_line_number: int
    line_index: int
    no_newline: bool = False
    type: ClassVar[str] = "delete"

DiffLine = ContextLine | AddLine | DeleteLine

def line_to_dict(line: DiffLine) -> dict[str, Any]:
    return {"type": line.type, **dataclasses.asdict(line)}

@dataclasses.dataclass
class Hunk:
    header: str        # "@@ -a,b +c,d @@ section"
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: list[DiffLine] = dataclasses.field(default_factory=list)
    raw_patch: str = ""  # file header + this hunk only; applies on its own

    def to_dict(self) -> dict[str, Any]:
        return {
            "header": self.header,
            "old_start": self.old_start,
            "old_lines": self.old_lines,
            "new_start": self.new_start,
            "new_lines": self.new_lines,
            "lines": [line_to_dict(ln) for ln in self.lines],
        }

@dataclasses.dataclass
class FileDiff:
    file_path: str
    status: FileStatus = "modified"
    old_path: str | None = None
    is_binary: bool = False
    additions: int = 0
    deletions: int = 0
    hunks: list[Hunk] = dataclasses.field(default_factory=list)
    new_mode: str | None = None  # mode of a file the diff creates

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "old_path": self.old_path,
            "status": self.status,
            "is_binary": self.is_binary,
            "additions": self.additions,
            "deletions": self.deletions,
            "hunks": [h.to_dict() for h in self.hunks],
        }

@dataclasses.dataclass(frozen=True)
class StagingResult:
    success: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

# ---------- diff parsing ----------

HUNK_RE = re.compile(r'^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$')

def parse_file_diff(diff_text: str, file_path: str) -> FileDiff:
    """Parse the unified diff of a single file into a FileDiff.

    Args:
        diff_text: Output of `git diff -- <file_path>`
        file_path: Path the diff belongs to, relative to the repository root

    Returns:
        FileDiff whose hunks carry typed lines numbered 0..N-1 and a raw_patch
        that can be fed to git apply on its own.

    Note:
        Parsing is permissive. Lines that fit no known construct are skipped
        (and logged at DEBUG level) instead of raising, so the remaining hunks
        are still usable. A "+++"/"---" line is read as a body line only while
        the open hunk still expects lines on that side; otherwise it is header
        text. That keeps deleted lines whose content starts with "--".
    """
    result = FileDiff(file_path=file_path)
    file_header: list[str] = []
    bodies: list[list[str]] = []  # raw lines of each hunk, header included
    cur: Hunk | None = None
    old_no = new_no = 0
    old_left = new_left = 0
    index = 0

    for raw in split_lines(diff_text):
        m = HUNK_RE.match(raw)
        if m and not result.is_binary:
            old_start = int(m.group(1))
            old_lines = int(m.group(2) or "1")
            new_start = int(m.group(3))
            new_lines = int(m.group(4) or "1")
            cur = Hunk(
                header=raw,
                old_start=old_start,
                old_lines=old_lines,
                new_start=new_start,
                new_lines=new_lines,
            )
            result.hunks.append(cur)
            bodies.append([raw])
            old_no, new_no = old_start, new_start
            old_left, new_left = old_lines, new_lines
            index = 0
            continue

        if cur is None:
            file_header.append(raw)
            if raw.startswith("Binary files ") or raw == "GIT binary patch":
                result.is_binary = True
            elif raw.startswith("new file mode "):
                result.status = "added"
                result.new_mode = raw[len("new file mode "):].strip()
            elif raw.startswith("deleted file mode "):
                result.status = "deleted"
            elif raw.startswith("rename from "):
                result.status = "renamed"
                result.old_path = raw[len("rename from "):]
            continue

        if raw.startswith("diff --git "):
            logger.debug("Ignoring further diff sections after %s", file_path)
            break

        if raw.startswith("\\"):
            # Applies to the line just before it
            if cur.lines:
                cur.lines[-1] = dataclasses.replace(cur.lines[-1], no_newline=True)
                bodies[-1].append(raw)
            continue

        sign = raw[:1]
        line: DiffLine
        if sign == "+" and (new_left > 0 or not raw.startswith("+++")):
            line = AddLine(content=raw[1:], new_line_number=new_no, line_index=index)
            new_no += 1
            new_left -= 1
            result.additions += 1
        elif sign == "-" and (old_left > 0 or not raw.startswith("---")):
            line = DeleteLine(content=raw[1:], old_line_number=old_no, line_index=index)
            old_no += 1
            old_left -= 1
            result.deletions += 1
        elif sign == " ":
            line = ContextLine(content=raw[1:], old_line_number=old_no, new_line_number=new_no, line_index=index)
            old_no += 1
            new_no += 1
            old_left -= 1
            new_left -= 1
        else:
            logger.debug("Skipping unrecognized line in diff of %s: %r", file_path, raw)
            continue
        cur.lines.append(line)
        bodies[-1].append(raw)
        index += 1

    head = "".join(ln + "\n" for ln in file_header)
    for hunk, body in zip(result.hunks, bodies):
        hunk.raw_patch = head + "".join(ln + "\n" for ln in body)
    return result

# ---------- Untracked files support ----------

def synthesize_untracked_diff(file_path: str, data: bytes, mode: str = "100644") -> FileDiff:
    """Build the diff of an untracked file: one hunk adding every line.

    A NUL byte within the first BINARY_SNIFF_BYTES marks the file binary (no
    hunks). An empty file has no lines to address and gets no hunk either.
    """
    diff = FileDiff(file_path=file_path, status="untracked", new_mode=mode)
    if b"\0" in data[:BINARY_SNIFF_BYTES]:
        diff.is_binary = True
        return diff

    text = _decode(data)
    contents = split_lines(text)
    if not contents:
        return diff
    lines: list[DiffLine] = [
        AddLine(content=c, new_line_number=i + 1, line_index=i)
        for i, c in enumerate(contents)
    ]
    if not text.endswith("\n"):
        lines[-1] = dataclasses.replace(lines[-1], no_newline=True)

    n = len(lines)
    hunk = Hunk(
        header=f"@@ -0,0 +1,{n} @@",
        old_start=0,
        old_lines=0,
        new_start=1,
        new_lines=n,
        lines=lines,
    )
    hunk.raw_patch = format_patch(file_path, [hunk.header] + emit_lines(lines), new_file_mode=mode)
    diff.additions = n
    diff.hunks.append(hunk)
    return diff

# ---------- patch synthesis ----------

def patch_file_header(file_path: str, new_file_mode: str | None = None) -> list[str]:
    if new_file_mode:
        return [
            f"diff --git a/{file_path} b/{file_path}",
            f"new file mode {new_file_mode}",
            "--- /dev/null",
            f"+++ b/{file_path}",
        ]
    return [
        f"diff --git a/{file_path} b/{file_path}",
        f"--- a/{file_path}",
        f"+++ b/{file_path}",
    ]

def format_patch(file_path: str, hunk_lines: list[str], new_file_mode: str | None = None) -> str:
    return "".join(ln + "\n" for ln in patch_file_header(file_path, new_file_mode) + hunk_lines)

def emit_lines(lines: Iterable[DiffLine]) -> list[str]:
    """Render lines with their own markers, as they appear in the source diff."""
    markers = {"context": " ", "add": "+", "delete": "-"}
    out: list[str] = []
    for ln in lines:
        out.append(markers[ln.type] + ln.content)
        if ln.no_newline:
            out.append(NO_NEWLINE_MARKER)
    return out

def synthesize_patch(
    file_path: str,
    hunk: Hunk,
    selected: Iterable[int],
    reverse: bool = False,
    new_file_mode: str | None = None,
) -> str:
    """Build a patch containing only the selected lines of one hunk.

    Forward patches are matched against the pre-image (index side), where an
    unselected addition does not exist yet and an unselected deletion is
    still present:

        context            -> " "      old+1 new+1
        add, selected      -> "+"            new+1
        add, unselected    -> omitted
        delete, selected   -> "-"      old+1
        delete, unselected -> " "      old+1 new+1

    Reverse patches are matched against the post-image instead, so the roles
    of unselected lines swap: an unselected addition becomes context and an
    unselected deletion is omitted.

    A line without a trailing newline is the last line of its side. When it
    turns into context but the other side goes on past it, it is split into a
    "-" and a "+" line instead, and only the side that ends there keeps the
    marker. Otherwise the next line would be joined onto it.

    Args:
        file_path: Path written into the patch headers
        hunk: Source hunk, from the diff the selection was made against
        selected: line_index values to keep as changes
        reverse: Build for `git apply --reverse`
        new_file_mode: Emit a file-creation patch with this mode

    Returns:
        Patch document with a recomputed hunk header. Start offsets are copied
        from the source hunk; a start of 0 becomes 1 once its side is non-empty.
    """
    chosen = set(selected)
    kept: list[tuple[str, DiffLine]] = []
    for ln in hunk.lines:
        picked = ln.line_index in chosen
        if ln.type == "context":
            marker = " "
        elif ln.type == "add":
            marker = "+" if picked else (" " if reverse else None)
        else:
            marker = "-" if picked else (None if reverse else " ")
        if marker is not None:
            kept.append((marker, ln))

    body: list[str] = []
    trailer: list[str] = []
    old_count = new_count = 0
    for i, (marker, ln) in enumerate(kept):
        if marker != "+":
            old_count += 1
        if marker != "-":
            new_count += 1
        later = {m for m, _ in kept[i + 1:]}
        if marker == " " and ln.no_newline and ln.type == "delete" and "+" in later:
            body += ["-" + ln.content, NO_NEWLINE_MARKER, "+" + ln.content]
        elif marker == " " and ln.no_newline and ln.type == "add" and "-" in later:
            body.append("-" + ln.content)
            trailer += ["+" + ln.content, NO_NEWLINE_MARKER]
        else:
            body.append(marker + ln.content)
            if ln.no_newline:
                body.append(NO_NEWLINE_MARKER)
    body += trailer

    old_start = hunk.old_start or (1 if old_count else 0)
    new_start = hunk.new_start or (1 if new_count else 0)
    header = f"@@ -{old_start},{old_count} +{new_start},{new_count} @@"
    return format_patch(file_path, [header] + body, new_file_mode=new_file_mode)

# ---------- patch application ----------

class Target(enum.StrEnum):
    INDEX = "index"
    WORKING_TREE = "working-tree"

class Direction(enum.StrEnum):
    FORWARD = "forward"
    REVERSE = "reverse"

@dataclasses.dataclass(frozen=True)
class ApplyRequest:
    patch: str
    target: Target = Target.WORKING_TREE
    direction: Direction = Direction.FORWARD

    def flags(self) -> list[str]:
        flags = []
        if self.target is Target.INDEX:
            flags.append("--cached")
        if self.direction is Direction.REVERSE:
            flags.append("--reverse")
        return flags

@dataclasses.dataclass(frozen=True)
class ApplyResponse:
    returncode: int
    stderr: str = ""

class PatchApplier(Protocol):
    async def __call__(self, repo_root: str, request: ApplyRequest) -> ApplyResponse:
        ...

async def git_apply(repo_root: str, request: ApplyRequest) -> ApplyResponse:
    cmd = ["git", "apply", *request.flags(), "--whitespace=nowarn", "-"]
    _, err, code = await run_capture(cmd, cwd=repo_root, input_text=request.patch)
    return ApplyResponse(returncode=code, stderr=err)

async def apply_patch(
    repo_root: str,
    patch: str,
    target: Target = Target.WORKING_TREE,
    direction: Direction = Direction.FORWARD,
    applier: PatchApplier = git_apply,
) -> None:
    """Apply a patch document once. Raises ApplyFailure on a non-zero exit."""
    request = ApplyRequest(patch=patch, target=target, direction=direction)
    response = await applier(repo_root, request)
    if response.returncode != 0:
        logger.warning("git apply %s failed with status %d", " ".join(request.flags()) or "(worktree)", response.returncode)
        raise ApplyFailure(response.stderr if response.stderr.strip() else f"git apply exited with status {response.returncode}")
    logger.info("Applied patch to %s (%s)", target, direction)

# ---------- working status ----------

@dataclasses.dataclass(frozen=True)
class UncommittedFile:
    path: str
    status: FileStatus
    staged: bool

@dataclasses.dataclass
class WorkingStatus:
    files: list[UncommittedFile]
    additions: int = 0
    deletions: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.files)

    @property
    def staged_count(self) -> int:
        return sum(1 for f in self.files if f.staged)

    @property
    def unstaged_count(self) -> int:
        return sum(1 for f in self.files if not f.staged)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_changes": self.has_changes,
            "files": [dataclasses.asdict(f) for f in self.files],
            "staged_count": self.staged_count,
            "unstaged_count": self.unstaged_count,
            "additions": self.additions,
            "deletions": self.deletions,
        }

STATUS_CODES: dict[str, FileStatus] = {"A": "added", "D": "deleted", "R": "renamed", "M": "modified", "?": "untracked"}

def parse_porcelain_status(text: str) -> list[UncommittedFile]:
    """Parse `git status --porcelain=v1 -z` into one entry per side.

    A file with both staged and unstaged changes yields two entries.
    """
    files: list[UncommittedFile] = []
    entries = text.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue
        x, y, path = entry[0], entry[1], entry[3:]
        if x in "RC":
            i += 1  # original path follows as its own field
        if x not in " ?!":
            files.append(UncommittedFile(path, STATUS_CODES.get(x, "modified"), staged=True))
        if y not in " !":
            files.append(UncommittedFile(path, STATUS_CODES.get(y, "modified"), staged=False))
    return files

def sum_numstat(text: str) -> tuple[int, int]:
    additions = deletions = 0
    for ln in split_lines(text):
        parts = ln.split("\t")
        # binary files report "-"
        if len(parts) >= 3 and parts[0].isdigit() and parts[1].isdigit():
            additions += int(parts[0])
            deletions += int(parts[1])
    return additions, deletions

# ---------- staging ----------

def parse_line_tokens(token_str: str) -> list[int]:
    """Parse "0,3,5-7" into [0, 3, 5, 6, 7]."""
    nums: list[int] = []
    for tok in token_str.split(","):
        t = tok.strip()
        if not t:
            continue
        if re.fullmatch(r"\d+", t):
            nums.append(int(t))
            continue
        m = re.fullmatch(r"(\d+)-(\d+)", t)
        if m:
            a, b = int(m.group(1)), int(m.group(2))
            if a > b:
                raise ValueError(f"invalid range: {t}")
            nums.extend(range(a, b + 1))
            continue
        raise ValueError(f"invalid token: {t}")
    return nums

def select_hunk(diff: FileDiff, hunk_index: int) -> Hunk:
    if diff.is_binary:
        raise ValidationError(f"{diff.file_path} is a binary file; it can only be changed as a whole")
    if not 0 <= hunk_index < len(diff.hunks):
        raise ValidationError(f"Hunk index {hunk_index} out of range for {diff.file_path} ({len(diff.hunks)} hunk(s))")
    return diff.hunks[hunk_index]

def check_selection(hunk: Hunk, selected: set[int]) -> None:
    out_of_range = sorted(i for i in selected if not 0 <= i < len(hunk.lines))
    if out_of_range:
        raise ValidationError(f"Line index(es) {out_of_range} out of range for hunk with {len(hunk.lines)} line(s)")
    if not any(hunk.lines[i].type != "context" for i in selected):
        raise ValidationError("Selected lines contain no changes")

@dataclasses.dataclass
class Stager:
    """Hunk- and line-granular staging against one repository.

    Every mutating call fetches a fresh diff, validates the request against
    it, and applies a single patch. Hunk and line indices from earlier calls
    are stale once anything has been applied. Calls are not serialized: two
    concurrent operations on the same file may race on the index or the
    working tree.
    """
    repo_root: str
    unified: int = UNIFIED_DEFAULT
    applier: PatchApplier = git_apply

    # --- reads ---

    async def get_file_diff(self, path: str, staged: bool = False) -> FileDiff | None:
        """Fetch and parse the diff of one file.

        Args:
            path: File path relative to the repository root
            staged: Index vs HEAD when True, working tree vs index otherwise

        Returns:
            The parsed diff, the synthetic all-addition diff for an untracked
            file (unstaged only), or None when the file has no changes.

        Raises:
            StagingError: git failed or the untracked file could not be read
        """
        cmd = [
            "git", "diff", "--patch",
            f"--unified={self.unified}",
            "--no-color", "--no-ext-diff",
            "--src-prefix=a/", "--dst-prefix=b/",
        ]
        if staged:
            cmd.append("--cached")
        cmd += ["--", path]
        diff_text = await self._git(cmd)
        if diff_text.strip():
            return parse_file_diff(diff_text, path)
        if staged or not await self.is_untracked(path):
            return None
        full_path = self._resolve(path)
        data = await read_file_bytes(full_path, path)
        return synthesize_untracked_diff(path, data, mode=detect_new_file_mode(full_path))

    async def is_untracked(self, path: str) -> bool:
        out = await self._git(["git", "ls-files", "-z", "--others", "--exclude-standard", "--", path])
        return path in out.split("\0")

    async def get_working_status(self) -> WorkingStatus:
        porcelain = await self._git(["git", "status", "--porcelain=v1", "-z"])
        unstaged = sum_numstat(await self._git(["git", "diff", "--numstat", "--no-color"]))
        staged = sum_numstat(await self._git(["git", "diff", "--cached", "--numstat", "--no-color"]))
        return WorkingStatus(
            files=parse_porcelain_status(porcelain),
            additions=unstaged[0] + staged[0],
            deletions=unstaged[1] + staged[1],
        )

    # --- hunks ---

    async def stage_hunk(self, path: str, hunk_index: int) -> StagingResult:
        return await self._apply_hunk(path, hunk_index, False, Target.INDEX, Direction.FORWARD, "Staged")

    async def unstage_hunk(self, path: str, hunk_index: int) -> StagingResult:
        return await self._apply_hunk(path, hunk_index, True, Target.INDEX, Direction.REVERSE, "Unstaged")

    async def discard_hunk(self, path: str, hunk_index: int) -> StagingResult:
        return await self._apply_hunk(path, hunk_index, False, Target.WORKING_TREE, Direction.REVERSE, "Discarded")

    # --- lines ---

    async def stage_lines(self, path: str, hunk_index: int, line_indices: Iterable[int]) -> StagingResult:
        return await self._apply_lines(path, hunk_index, line_indices, False, Target.INDEX, Direction.FORWARD, "Staged")

    async def unstage_lines(self, path: str, hunk_index: int, line_indices: Iterable[int]) -> StagingResult:
        return await self._apply_lines(path, hunk_index, line_indices, True, Target.INDEX, Direction.REVERSE, "Unstaged")

    async def discard_lines(self, path: str, hunk_index: int, line_indices: Iterable[int]) -> StagingResult:
        return await self._apply_lines(path, hunk_index, line_indices, False, Target.WORKING_TREE, Direction.REVERSE, "Discarded")

    # --- whole files ---

    async def stage_file(self, path: str) -> StagingResult:
        return await self._git_result(["git", "add", "--", path], f"Staged {path}")

    async def unstage_file(self, path: str) -> StagingResult:
        return await self._git_result(["git", "restore", "--staged", "--", path], f"Unstaged {path}")

    async def discard_file(self, path: str) -> StagingResult:
        return await self._git_result(["git", "restore", "--", path], f"Discarded changes in {path}")

    async def stage_all(self) -> StagingResult:
        return await self._git_result(["git", "add", "-A"], "Staged all changes")

    async def unstage_all(self) -> StagingResult:
        return await self._git_result(["git", "restore", "--staged", "."], "Unstaged all changes")

    # --- internals ---

    async def _apply_hunk(
        self, path: str, hunk_index: int, staged: bool, target: Target, direction: Direction, verb: str,
    ) -> StagingResult:
        try:
            hunk = select_hunk(await self._require_diff(path, staged), hunk_index)
            if not hunk.raw_patch:
                raise ValidationError(f"Hunk {hunk_index} of {path} has no patch text")
            await apply_patch(self.repo_root, hunk.raw_patch, target, direction, self.applier)
        except StagingError as e:
            return StagingResult(success=False, message=str(e))
        return StagingResult(success=True, message=f"{verb} hunk {hunk_index} of {path}")

    async def _apply_lines(
        self,
        path: str,
        hunk_index: int,
        line_indices: Iterable[int],
        staged: bool,
        target: Target,
        direction: Direction,
        verb: str,
    ) -> StagingResult:
        selected = set(line_indices)
        if not selected:
            return StagingResult(success=False, message="No lines selected")
        try:
            diff = await self._require_diff(path, staged)
            hunk = select_hunk(diff, hunk_index)
            check_selection(hunk, selected)
            reverse = direction is Direction.REVERSE
            creates_file = diff.status == "untracked" and not reverse
            patch = synthesize_patch(
                path,
                hunk,
                selected,
                reverse=reverse,
                new_file_mode=(diff.new_mode or "100644") if creates_file else None,
            )
            await apply_patch(self.repo_root, patch, target, direction, self.applier)
        except StagingError as e:
            return StagingResult(success=False, message=str(e))
        return StagingResult(success=True, message=f"{verb} {len(selected)} line(s) in {path}")

    async def _require_diff(self, path: str, staged: bool) -> FileDiff:
        diff = await self.get_file_diff(path, staged=staged)
        if diff is None:
            raise ValidationError(f"No changes found for {path}")
        return diff

    async def _git(self, cmd: list[str]) -> str:
        try:
            return await run(cmd, cwd=self.repo_root)
        except subprocess.CalledProcessError as e:
            raise StagingError(e.stderr.strip() if e.stderr else str(e)) from e

    async def _git_result(self, cmd: list[str], message: str) -> StagingResult:
        try:
            await self._git(cmd)
        except StagingError as e:
            return StagingResult(success=False, message=str(e))
        return StagingResult(success=True, message=message)

    def _resolve(self, path: str) -> str:
        root = os.path.realpath(self.repo_root)
        full_path = os.path.realpath(os.path.join(root, path))
        if os.path.commonpath([root, full_path]) != root:
            raise ValidationError(f"{path} is outside the repository")
        return full_path

async def read_file_bytes(full_path: str, display_path: str) -> bytes:
    def _read() -> bytes:
        with open(full_path, "rb") as f:
            return f.read()
    try:
        return await asyncio.to_thread(_read)
    except OSError as e:
        raise IOFailure(f"Failed to read {display_path}: {e.strerror or e}") from e

# ---------- ANSI Colors ----------

ANSI_RED = "\033[31m"
ANSI_GREEN = "\033[32m"
ANSI_CYAN = "\033[36m"
ANSI_RESET = "\033[0m"
ANSI_BOLD = "\033[1m"

def format_diff_pretty(diff: FileDiff | None, path: str) -> str:
    """Format a FileDiff as colored text, one "NNNN: <marker> text" row per line.

    The leading number is the line_index to pass to stage/unstage/discard.
    """
    if diff is None:
        return f"{path}: no changes"
    status_label = f" ({diff.status})" if diff.status != "modified" else ""
    lines = [f"{ANSI_CYAN}{ANSI_BOLD}{diff.file_path}{status_label}{ANSI_RESET}"]
    if diff.old_path:
        lines.append(f"  renamed from {diff.old_path}")
    if diff.is_binary:
        lines.append("  (binary file)")
        return "\n".join(lines)

    for hunk_index, hunk in enumerate(diff.hunks):
        lines.append(f"{ANSI_CYAN}[{hunk_index}] {hunk.header}{ANSI_RESET}")
        for ln in hunk.lines:
            if ln.type == "add":
                lines.append(f"{ANSI_GREEN}{ln.line_index:04d}: + {ln.content}{ANSI_RESET}")
            elif ln.type == "delete":
                lines.append(f"{ANSI_RED}{ln.line_index:04d}: - {ln.content}{ANSI_RESET}")
            else:
                lines.append(f"{ln.line_index:04d}:   {ln.content}")
    lines.append(f"--- {len(diff.hunks)} hunk(s), +{diff.additions} -{diff.deletions}")
    return "\n".join(lines)

def format_status_pretty(status: WorkingStatus) -> str:
    if not status.has_changes:
        return "Nothing to commit, working tree clean"
    lines: list[str] = []
    for f in status.files:
        color = ANSI_GREEN if f.staged else ANSI_RED
        side = "staged  " if f.staged else "unstaged"
        lines.append(f"{color}{side} {f.status:<9} {f.path}{ANSI_RESET}")
    lines.append(
        f"--- {status.staged_count} staged, {status.unstaged_count} unstaged, "
        f"+{status.additions} -{status.deletions}"
    )
    return "\n".join(lines)

def format_result_pretty(result: StagingResult) -> str:
    if result.success:
        return f"{ANSI_GREEN}{result.message}{ANSI_RESET}"
    return f"{ANSI_RED}Error: {result.message}{ANSI_RESET}"

# ---------- CLI ----------

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(prog="git-precise", description="Hunk- and line-level git staging")
    p.add_argument("-C", dest="repo", default=".", help="Repository root (default: current directory)")
    p.add_argument("--unified", type=int, default=UNIFIED_DEFAULT, help="Context lines hunks are computed with")
    p.add_argument("--format", choices=["json", "pretty"], default="json", help="Output format (default: json)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log git invocations to stderr")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="List staged and unstaged files")

    d = sub.add_parser("diff", help="Show the hunks and line indices of one file")
    d.add_argument("path", help="Target file path")
    d.add_argument("--staged", action="store_true", help="Show index vs HEAD instead of working tree vs index")

    for name, help_text in (
        ("stage", "Stage a file, one hunk, or selected lines of a hunk"),
        ("unstage", "Unstage a file, one hunk, or selected lines of a hunk"),
        ("discard", "Discard working tree changes of a file, one hunk, or selected lines"),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("path", help="Target file path")
        s.add_argument("hunk", type=int, nargs="?", default=None, help="Hunk index (default: whole file)")
        s.add_argument("--lines", default=None, help="Line indices within the hunk: N,M,P-Q")

    sub.add_parser("stage-all", help="Stage every change, untracked files included")
    sub.add_parser("unstage-all", help="Unstage every staged change")

    sub.add_parser("mcp", help="Run as MCP server (stdio)")

    return p.parse_args(argv)

async def run_mutation(stager: Stager, cmd: str, path: str, hunk: int | None, lines: list[int] | None) -> StagingResult:
    """Dispatch stage/unstage/discard to the file, hunk or line variant."""
    if hunk is None:
        if lines is not None:
            return StagingResult(success=False, message="--lines requires a hunk index")
        whole_file = {"stage": stager.stage_file, "unstage": stager.unstage_file, "discard": stager.discard_file}
        return await whole_file[cmd](path)
    if lines is None:
        by_hunk = {"stage": stager.stage_hunk, "unstage": stager.unstage_hunk, "discard": stager.discard_hunk}
        return await by_hunk[cmd](path, hunk)
    by_lines = {"stage": stager.stage_lines, "unstage": stager.unstage_lines, "discard": stager.discard_lines}
    return await by_lines[cmd](path, hunk, lines)

def emit(payload: dict[str, Any] | None, pretty: str, fmt: str) -> None:
    if fmt == "pretty":
        print(pretty)
    else:
        json.dump(payload, sys.stdout, ensure_ascii=False)
        sys.stdout.write("\n")

def main(argv: list[str] | None = None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    stager = Stager(repo_root=args.repo, unified=args.unified)

    if args.cmd == "mcp":
        mcp = create_mcp_server(stager)
        mcp.run()
        return

    if args.cmd == "status":
        try:
            status = asyncio.run(stager.get_working_status())
        except StagingError as e:
            emit({"error": str(e)}, format_result_pretty(StagingResult(False, str(e))), args.format)
            sys.exit(1)
        emit(status.to_dict(), format_status_pretty(status), args.format)
        return

    if args.cmd == "diff":
        try:
            diff = asyncio.run(stager.get_file_diff(args.path, staged=args.staged))
        except StagingError as e:
            emit({"error": str(e)}, format_result_pretty(StagingResult(False, str(e))), args.format)
            sys.exit(1)
        emit(diff.to_dict() if diff else None, format_diff_pretty(diff, args.path), args.format)
        return

    if args.cmd in ("stage-all", "unstage-all"):
        everything = stager.stage_all if args.cmd == "stage-all" else stager.unstage_all
        result = asyncio.run(everything())
        emit(result.to_dict(), format_result_pretty(result), args.format)
        if not result.success:
            sys.exit(1)
        return

    lines = None
    if args.lines is not None:
        try:
            lines = parse_line_tokens(args.lines)
        except ValueError as e:
            if args.format == "pretty":
                print(f"{ANSI_RED}Error: {e}{ANSI_RESET}", file=sys.stderr)
            else:
                print(json.dumps({"error": str(e)}), file=sys.stderr)
            sys.exit(2)
    result = asyncio.run(run_mutation(stager, args.cmd, args.path, args.hunk, lines))
    emit(result.to_dict(), format_result_pretty(result), args.format)
    if not result.success:
        sys.exit(1)

# ---------- MCP Server ----------

def create_mcp_server(stager: Stager):
    """Create and configure MCP server with FastMCP.

    Mutating tools share one asyncio.Lock per repository root, so requests
    arriving concurrently over the same connection are applied one at a time.
    """
    try:
        from fastmcp import FastMCP
        from mcp.types import ToolAnnotations
    except ImportError:
        print("Error: fastmcp package not found. Install with: pip install fastmcp", file=sys.stderr)
        sys.exit(1)

    mcp = FastMCP("git-precise")
    locks: dict[str, asyncio.Lock] = {}

    def repo_lock() -> asyncio.Lock:
        return locks.setdefault(os.path.realpath(stager.repo_root), asyncio.Lock())

    async def mutate(cmd: str, path: str, hunk_index: int | None, lines: str | None) -> str:
        try:
            nums = parse_line_tokens(lines) if lines is not None else None
        except ValueError as e:
            return json.dumps({"error": str(e)}, ensure_ascii=False)
        async with repo_lock():
            result = await run_mutation(stager, cmd, path, hunk_index, nums)
        return json.dumps(result.to_dict(), ensure_ascii=False, indent=2)

    @mcp.tool(annotations=ToolAnnotations(
        readOnlyHint=True,
        openWorldHint=True
    ))
    async def status() -> str:
        """List files with staged and unstaged changes.

        Returns:
            JSON string with format: {has_changes, files: [{path, status, staged}],
            staged_count, unstaged_count, additions, deletions}
        """
        try:
            result = await stager.get_working_status()
        except StagingError as e:
            return json.dumps({"error": str(e)}, ensure_ascii=False)
        return json.dumps(result.to_dict(), ensure_ascii=False, indent=2)

    @mcp.tool(annotations=ToolAnnotations(
        readOnlyHint=True,
        openWorldHint=True
    ))
    async def diff(path: str, staged: bool = False) -> str:
        """View the hunks of one file with addressable line indices.

        PREFER THIS OVER `git diff` before staging part of a file. Each hunk is
        listed in order (its position is the hunk index) and each of its lines
        carries a line_index. Pass those to stage, unstage or discard.
        Untracked files are shown as a single hunk adding every line.

        Indices are only valid until the next mutation; call diff again after
        staging, unstaging or discarding anything.

        Args:
            path: File path relative to the repository root
            staged: Show staged changes (index vs HEAD) instead of unstaged ones

        Returns:
            JSON string with format: {file_path, old_path, status, is_binary, additions,
            deletions, hunks: [{header, old_start, old_lines, new_start, new_lines, lines}]}
        """
        try:
            result = await stager.get_file_diff(path, staged=staged)
        except StagingError as e:
            return json.dumps({"error": str(e)}, ensure_ascii=False)
        if result is None:
            return json.dumps({"path": path, "error": "No changes found for this file"}, ensure_ascii=False)
        return json.dumps(result.to_dict(), ensure_ascii=False, indent=2)

    @mcp.tool(annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        openWorldHint=True
    ))
    async def stage(path: str, hunk_index: int | None = None, lines: str | None = None) -> str:
        """Stage a whole file, one hunk, or selected lines of one hunk (alternative to `git add -p`).

        Line format examples: "2", "2,4", "3-6", "0,3-6". Lines are line_index values
        from the unstaged `diff` of the same hunk. Context lines may be included but
        at least one added or deleted line must be selected.

        Args:
            path: File path relative to the repository root
            hunk_index: Hunk to stage (omit to stage the whole file)
            lines: Line indices within the hunk (omit to stage the whole hunk)

        Returns:
            JSON string with format: {success, message}
        """
        return await mutate("stage", path, hunk_index, lines)

    @mcp.tool(annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        openWorldHint=True
    ))
    async def unstage(path: str, hunk_index: int | None = None, lines: str | None = None) -> str:
        """Unstage a whole file, one hunk, or selected lines of one hunk.

        Indices refer to the staged diff (`diff` with staged=true).

        Args:
            path: File path relative to the repository root
            hunk_index: Hunk to unstage (omit to unstage the whole file)
            lines: Line indices within the hunk (omit to unstage the whole hunk)

        Returns:
            JSON string with format: {success, message}
        """
        return await mutate("unstage", path, hunk_index, lines)

    @mcp.tool(annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        openWorldHint=True
    ))
    async def discard(path: str, hunk_index: int | None = None, lines: str | None = None) -> str:
        """Discard working tree changes of a whole file, one hunk, or selected lines.

        This cannot be undone. Indices refer to the unstaged `diff`.

        Args:
            path: File path relative to the repository root
            hunk_index: Hunk to discard (omit to discard the whole file)
            lines: Line indices within the hunk (omit to discard the whole hunk)

        Returns:
            JSON string with format: {success, message}
        """
        return await mutate("discard", path, hunk_index, lines)

    @mcp.tool(annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        openWorldHint=True
    ))
    async def stage_all() -> str:
        """Stage every change in the repository, untracked files included (`git add -A`).

        Returns:
            JSON string with format: {success, message}
        """
        async with repo_lock():
            result = await stager.stage_all()
        return json.dumps(result.to_dict(), ensure_ascii=False, indent=2)

    @mcp.tool(annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        openWorldHint=True
    ))
    async def unstage_all() -> str:
        """Unstage every staged change; the working tree is left as it is.

        Returns:
            JSON string with format: {success, message}
        """
        async with repo_lock():
            result = await stager.unstage_all()
        return json.dumps(result.to_dict(), ensure_ascii=False, indent=2)

    return mcp

if __name__ == "__main__":
    main()
