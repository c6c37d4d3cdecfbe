"""Read-mostly view of the workspace a session is working in.

Everything the reality checker and the session manager need to know about
the filesystem, the git checkout and the latest test report goes through
``WorkspaceInspector`` so tests can swap in a temporary directory.
"""
from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from coachdash.models import SuiteResults

logger = logging.getLogger("coachdash.workspace")

BUILTIN_EXCLUDES = {".git", "node_modules", "dist", "coverage", ".venv", "__pycache__", ".pytest_cache"}
_PATH_TOKEN = re.compile(r"(?<![\w@/])((?:[\w.-]+/)*[\w-][\w.-]*\.[A-Za-z][A-Za-z0-9]{0,7})(?![\w/])")
_FRONTMATTER = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)", re.DOTALL)
_DATE_KEYS = ("updated", "updated_at", "updatedAt", "last_updated", "date")


@dataclass
class GitStatus:
    is_repo: bool = False
    head: str | None = None
    dirty_paths: list[str] = field(default_factory=list)

    @property
    def dirty(self) -> bool:
        return bool(self.dirty_paths)


@dataclass
class DocInfo:
    path: str
    updated: str | None
    age_days: int
    stale: bool
    word_count: int


def normalize_rel_path(raw: str | None) -> str:
    value = str(raw or "").replace("\\", "/").strip()
    if not value:
        return ""
    value = value.lstrip("/")
    parts: list[str] = []
    for token in value.split("/"):
        clean = token.strip()
        if not clean or clean == ".":
            continue
        if clean == "..":
            raise ValueError("Path traversal is not allowed")
        parts.append(clean)
    return "/".join(parts)


def extract_paths(text: str) -> list[str]:
    """Pull tokens that look like relative file paths out of free text."""
    found: list[str] = []
    for match in _PATH_TOKEN.finditer(text or ""):
        token = match.group(1).strip(".")
        stem = token.rsplit("/", 1)[-1].split(".", 1)[0]
        if "." not in token or ("/" not in token and len(stem) < 2):
            continue
        try:
            rel = normalize_rel_path(token)
        except ValueError:
            continue
        if rel and rel not in found:
            found.append(rel)
    return found


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    match = _FRONTMATTER.match(text)
    if not match:
        return {}, text
    try:
        fm = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError:
        fm = {}
    if not isinstance(fm, dict):
        fm = {}
    return fm, match.group(2)


def _coerce_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


class WorkspaceInspector:
    """Filesystem, git and test-report access rooted at one directory."""

    def __init__(
        self,
        root: Path | str,
        docs_dir: str = "docs",
        test_report_path: str = ".coachdash/test-report.json",
    ):
        self.root = Path(root)
        self.docs_dir = docs_dir
        self.test_report_path = test_report_path

    # ── Files ──────────────────────────────────────────────────────

    def resolve(self, rel_path: str) -> Path:
        rel = normalize_rel_path(rel_path)
        if not rel:
            raise ValueError("File path cannot be empty")
        root = self.root.resolve(strict=False)
        candidate = (root / rel).resolve(strict=False)
        try:
            candidate.relative_to(root)
        except ValueError as exc:
            raise ValueError("Requested path escapes the workspace root") from exc
        return candidate

    def exists(self, rel_path: str) -> bool:
        try:
            return self.resolve(rel_path).is_file()
        except ValueError:
            return False

    def list_files(self) -> set[str]:
        files: set[str] = set()
        if not self.root.exists():
            return files
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if d not in BUILTIN_EXCLUDES]
            base = Path(dirpath)
            for name in filenames:
                files.add((base / name).relative_to(self.root).as_posix())
        return files

    def count_lines(self, rel_path: str) -> int:
        try:
            path = self.resolve(rel_path)
            with path.open("r", encoding="utf-8", errors="replace") as handle:
                return sum(1 for _ in handle)
        except (OSError, ValueError):
            return 0

    def write_text(self, rel_path: str, content: str) -> Path:
        path = self.resolve(rel_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def is_writable(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)

    # ── Test report ────────────────────────────────────────────────

    def read_test_results(self) -> SuiteResults | None:
        """Load the latest test report, or ``None`` when there is none.

        Accepts pytest-json-report ``summary`` blocks, jest ``num*Tests``
        counters and a flat ``{passed, failed, total}`` mapping.
        """
        path = self.root / self.test_report_path
        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable test report {path}: {e}")
            return None
        if not isinstance(payload, dict):
            return None

        if "numTotalTests" in payload:
            passed = int(payload.get("numPassedTests") or 0)
            failed = int(payload.get("numFailedTests") or 0)
            total = int(payload.get("numTotalTests") or passed + failed)
            return SuiteResults(passed=passed, failed=failed, total=total)

        summary = payload.get("summary") if isinstance(payload.get("summary"), dict) else payload
        passed = int(summary.get("passed") or 0)
        failed = int(summary.get("failed") or 0) + int(summary.get("error") or 0)
        total = int(summary.get("total") or passed + failed)
        return SuiteResults(passed=passed, failed=failed, total=total)

    # ── Documentation ──────────────────────────────────────────────

    def scan_docs(self, stale_days: int, today: date | None = None) -> list[DocInfo]:
        today = today or datetime.now(timezone.utc).date()
        docs_root = self.root / self.docs_dir
        if not docs_root.is_dir():
            return []
        docs: list[DocInfo] = []
        for md_file in sorted(docs_root.rglob("*.md")):
            try:
                text = md_file.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning(f"Skipping unreadable doc {md_file}: {e}")
                continue
            fm, body = split_frontmatter(text)
            updated: date | None = None
            for key in _DATE_KEYS:
                updated = _coerce_date(fm.get(key))
                if updated:
                    break
            if updated is None:
                updated = datetime.fromtimestamp(md_file.stat().st_mtime, timezone.utc).date()
            age = max(0, (today - updated).days)
            docs.append(
                DocInfo(
                    path=md_file.relative_to(self.root).as_posix(),
                    updated=updated.isoformat(),
                    age_days=age,
                    stale=age > stale_days,
                    word_count=len(body.split()),
                )
            )
        return docs

    def touch_frontmatter_date(self, rel_path: str, today: date | None = None) -> None:
        """Set the ``updated`` front-matter field, creating the block if needed."""
        path = self.resolve(rel_path)
        text = path.read_text(encoding="utf-8")
        fm, body = split_frontmatter(text)
        fm["updated"] = (today or datetime.now(timezone.utc).date()).isoformat()
        fm_text = yaml.dump(fm, default_flow_style=False, sort_keys=False, allow_unicode=True)
        path.write_text(f"---\n{fm_text}---\n{body}", encoding="utf-8")

    # ── Git ────────────────────────────────────────────────────────

    def _git(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", "-C", str(self.root), *args],
            capture_output=True,
            text=True,
            check=False,
        )

    def git_status(self) -> GitStatus:
        try:
            repo_check = self._git("rev-parse", "--is-inside-work-tree")
            if repo_check.returncode != 0 or repo_check.stdout.strip().lower() != "true":
                return GitStatus()
            head = self._git("rev-parse", "HEAD")
            head_sha = head.stdout.strip() if head.returncode == 0 else None
            status = self._git("status", "--porcelain", "--untracked-files=normal")
        except OSError as e:
            logger.warning(f"git unavailable: {e}")
            return GitStatus()

        dirty: list[str] = []
        if status.returncode == 0:
            for raw_line in status.stdout.splitlines():
                line = raw_line.rstrip()
                if len(line) < 4:
                    continue
                payload = line[3:].strip()
                if " -> " in payload:
                    payload = payload.split(" -> ", 1)[1].strip()
                dirty.append(payload)
        return GitStatus(is_repo=True, head=head_sha, dirty_paths=dirty)

    def git_commit(self, message: str) -> str:
        """Stage everything and commit. Returns the new HEAD hash.

        Raises ``RuntimeError`` with git's own output when the commit fails.
        """
        try:
            add = self._git("add", "-A")
            if add.returncode != 0:
                raise RuntimeError(add.stderr.strip() or "git add failed")
            commit = self._git("commit", "-m", message)
            if commit.returncode != 0:
                raise RuntimeError((commit.stderr or commit.stdout).strip() or "git commit failed")
            head = self._git("rev-parse", "--short", "HEAD")
        except OSError as e:
            raise RuntimeError(str(e)) from e
        return head.stdout.strip()
