import json
import tempfile
import unittest
from datetime import date
from pathlib import Path

from watchfiles import Change

from coachdash.events import DOCUMENTATION_STATUS, create_bus
from coachdash.services.workspace import WorkspaceInspector, extract_paths, normalize_rel_path, split_frontmatter
from coachdash.services.workspace_watcher import WorkspaceWatcher


class PathHelperTests(unittest.TestCase):
    def test_extract_paths_finds_relative_files(self) -> None:
        text = "Update src/app.py and docs/guide.md, e.g. keep src/app.py tidy"
        self.assertEqual(extract_paths(text), ["src/app.py", "docs/guide.md"])

    def test_extract_paths_ignores_plain_words(self) -> None:
        self.assertEqual(extract_paths("write the login flow"), [])
        self.assertEqual(extract_paths(""), [])

    def test_normalize_rejects_traversal(self) -> None:
        self.assertEqual(normalize_rel_path("./a//b\\c.txt"), "a/b/c.txt")
        with self.assertRaises(ValueError):
            normalize_rel_path("a/../../etc/passwd")

    def test_split_frontmatter(self) -> None:
        fm, body = split_frontmatter("---\ntitle: Guide\n---\nHello world\n")
        self.assertEqual(fm, {"title": "Guide"})
        self.assertEqual(body, "Hello world\n")
        self.assertEqual(split_frontmatter("no front matter"), ({}, "no front matter"))


class WorkspaceInspectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.inspector = WorkspaceInspector(self.root)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _write(self, rel: str, content: str) -> None:
        path = self.root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    def test_files_and_line_counts(self) -> None:
        self._write("src/app.py", "a\nb\nc\n")
        self._write("node_modules/lib/index.js", "x\n")
        self.assertTrue(self.inspector.exists("src/app.py"))
        self.assertFalse(self.inspector.exists("../outside.py"))
        self.assertEqual(self.inspector.count_lines("src/app.py"), 3)
        self.assertEqual(self.inspector.count_lines("missing.py"), 0)
        self.assertEqual(self.inspector.list_files(), {"src/app.py"})
        with self.assertRaises(ValueError):
            self.inspector.resolve("")

    def test_missing_or_malformed_report_is_none(self) -> None:
        self.assertIsNone(self.inspector.read_test_results())
        self._write(".coachdash/test-report.json", "{not json")
        self.assertIsNone(self.inspector.read_test_results())

    def test_reads_pytest_summary(self) -> None:
        payload = {"summary": {"passed": 3, "failed": 1, "error": 1, "total": 5}}
        self._write(".coachdash/test-report.json", json.dumps(payload))
        results = self.inspector.read_test_results()
        self.assertEqual((results.passed, results.failed, results.total), (3, 2, 5))

    def test_reads_jest_counters(self) -> None:
        payload = {"numPassedTests": 8, "numFailedTests": 2, "numTotalTests": 10}
        self._write(".coachdash/test-report.json", json.dumps(payload))
        results = self.inspector.read_test_results()
        self.assertEqual((results.passed, results.failed, results.total), (8, 2, 10))

    def test_reads_flat_counts(self) -> None:
        self._write(".coachdash/test-report.json", json.dumps({"passed": 4, "failed": 0}))
        results = self.inspector.read_test_results()
        self.assertEqual((results.passed, results.failed, results.total), (4, 0, 4))

    def test_scan_docs_uses_front_matter_dates(self) -> None:
        self._write("docs/old.md", "---\nupdated: 2026-01-01\n---\none two three\n")
        self._write("docs/fresh.md", "---\nupdated: 2026-01-30\n---\nfour five\n")
        docs = {d.path: d for d in self.inspector.scan_docs(14, today=date(2026, 2, 1))}

        self.assertEqual(docs["docs/old.md"].age_days, 31)
        self.assertTrue(docs["docs/old.md"].stale)
        self.assertEqual(docs["docs/old.md"].word_count, 3)
        self.assertFalse(docs["docs/fresh.md"].stale)

    def test_touch_frontmatter_creates_block(self) -> None:
        self._write("docs/plain.md", "Body text\n")
        self.inspector.touch_frontmatter_date("docs/plain.md", today=date(2026, 3, 1))
        fm, body = split_frontmatter((self.root / "docs/plain.md").read_text(encoding="utf-8"))
        self.assertEqual(fm["updated"], "2026-03-01")
        self.assertEqual(body, "Body text\n")


class WorkspaceWatcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        (self.root / "docs").mkdir()
        (self.root / "docs" / "guide.md").write_text("---\nupdated: 2000-01-01\n---\nhello there\n", encoding="utf-8")
        self.bus = create_bus()
        self.watcher = WorkspaceWatcher(WorkspaceInspector(self.root), self.bus, stale_days=14)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_publish_updates_documentation_topic(self) -> None:
        self.watcher.publish()
        status = self.bus.channel(DOCUMENTATION_STATUS).value["status"]
        self.assertEqual(status["doc_count"], 1)
        self.assertEqual(status["stale"], ["docs/guide.md"])
        self.assertEqual(status["total_words"], 2)

    def test_classify_changes_keeps_markdown_only(self) -> None:
        changes = {
            (Change.added, str(self.root / "docs" / "new.md")),
            (Change.deleted, str(self.root / "docs" / "gone.md")),
            (Change.modified, str(self.root / "docs" / "image.png")),
        }
        kinds = sorted(kind for kind, _ in self.watcher._classify_changes(changes))
        self.assertEqual(kinds, ["deleted", "modified"])


if __name__ == "__main__":
    unittest.main()
