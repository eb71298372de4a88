from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from agent_coordinator.errors import RepositoryAccessError, ResponseParseError
from agent_coordinator.repository import (
    FileListing,
    GitRepositoryAccess,
    RepositoryAnalyzer,
    RepositoryFile,
)


class FakeRepositoryAccess:
    def __init__(
        self,
        root: Path,
        files: list[RepositoryFile],
        *,
        clone_error: bool = False,
        unreadable: set[str] | None = None,
    ) -> None:
        self.root = root
        self.files = tuple(files)
        self.clone_error = clone_error
        self.unreadable = unreadable or set()
        self.released: list[Path] = []

    def clone_repository(self, url: str) -> Path:
        if self.clone_error:
            raise RepositoryAccessError("clone", url, "authentication required")
        return self.root

    def list_files(self, handle: Path, *, recursive: bool = True) -> FileListing:
        return FileListing(root=handle, files=self.files, main_files=self.files)

    def read_file(self, path: Path) -> str:
        if path.name in self.unreadable:
            raise RepositoryAccessError("read", str(path), "permission denied")
        return f"# contents of {path.name}\n"

    def release(self, handle: Path) -> None:
        self.released.append(handle)


def _file(root: Path, name: str) -> RepositoryFile:
    return RepositoryFile(path=root / name, relative_path=name, size_bytes=10, language="python")


class TrackingLLM:
    """Counts overlapping calls; prompts for files in ``broken`` get a non-JSON reply."""

    model_name = "tracking-model"

    def __init__(self, delay_s: float, broken: set[str] | None = None) -> None:
        self.delay_s = delay_s
        self.broken = broken or set()
        self.in_flight = 0
        self.peak = 0
        self.calls = 0
        self._lock = threading.Lock()

    def generate_text(self, prompt: str, options) -> str:
        if any(f"Path: {name}" in prompt for name in self.broken):
            return "not json"
        with self._lock:
            self.in_flight += 1
            self.calls += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.delay_s)
            return '{"summary": "ok"}'
        finally:
            with self._lock:
                self.in_flight -= 1


def test_clone_failure_returns_partial_result(tmp_path: Path, scripted_llm) -> None:
    access = FakeRepositoryAccess(tmp_path, [], clone_error=True)
    analyzer = RepositoryAnalyzer(access, scripted_llm([]))

    analysis = analyzer.analyze("https://example.com/private.git")

    assert analysis.partial_analysis
    assert "authentication required" in (analysis.error or "")
    assert analysis.analyses == []
    assert analysis.to_context()["partial_analysis"] is True
    assert access.released == []


def test_analysis_keeps_listing_order(tmp_path: Path, scripted_llm) -> None:
    files = [_file(tmp_path, "a.py"), _file(tmp_path, "b.py"), _file(tmp_path, "c.py")]
    access = FakeRepositoryAccess(tmp_path, files)

    def describe(prompt: str) -> str:
        for name in ("a.py", "b.py", "c.py"):
            if f"Path: {name}" in prompt:
                return f'{{"summary": "{name}"}}'
        return "{}"

    analyzer = RepositoryAnalyzer(
        access, scripted_llm([describe, describe, describe]), max_concurrency=3
    )

    analysis = analyzer.analyze("https://example.com/repo.git")

    assert not analysis.partial_analysis
    assert [item["file_path"] for item in analysis.analyses] == ["a.py", "b.py", "c.py"]
    assert [item["analysis"]["summary"] for item in analysis.analyses] == [
        "a.py",
        "b.py",
        "c.py",
    ]
    assert analysis.file_structure is not None
    assert analysis.file_structure["total_files"] == 3
    assert access.released == [tmp_path]


def test_read_failure_degrades_to_partial_and_releases(tmp_path: Path, scripted_llm) -> None:
    files = [_file(tmp_path, "a.py"), _file(tmp_path, "locked.py")]
    access = FakeRepositoryAccess(tmp_path, files, unreadable={"locked.py"})
    analyzer = RepositoryAnalyzer(access, scripted_llm(['{"summary": "a"}']), max_concurrency=1)

    analysis = analyzer.analyze("https://example.com/repo.git")

    assert analysis.partial_analysis
    assert [item["file_path"] for item in analysis.analyses] == ["a.py"]
    assert access.released == [tmp_path]


def test_parse_failure_in_file_analysis_is_raised(tmp_path: Path, scripted_llm) -> None:
    access = FakeRepositoryAccess(tmp_path, [_file(tmp_path, "a.py")])
    analyzer = RepositoryAnalyzer(access, scripted_llm(["this file is fine"]))

    with pytest.raises(ResponseParseError) as exc_info:
        analyzer.analyze("https://example.com/repo.git")

    assert exc_info.value.stage == "code_analysis"
    assert access.released == [tmp_path]


def test_git_access_lists_files_and_prefers_manifests(tmp_path: Path) -> None:
    (tmp_path / "src" / "pkg").mkdir(parents=True)
    (tmp_path / "node_modules" / "dep").mkdir(parents=True)
    (tmp_path / "README.md").write_text("# demo\n", encoding="utf-8")
    (tmp_path / "pyproject.toml").write_text("[project]\nname='demo'\n", encoding="utf-8")
    (tmp_path / "main.py").write_text("print(1)\n", encoding="utf-8")
    (tmp_path / "src" / "pkg" / "core.py").write_text("x = 1\n", encoding="utf-8")
    (tmp_path / "node_modules" / "dep" / "index.js").write_text("1\n", encoding="utf-8")
    (tmp_path / "empty.py").write_text("", encoding="utf-8")

    access = GitRepositoryAccess(main_files_limit=3)
    listing = access.list_files(tmp_path)

    relative = {item.relative_path for item in listing.files}
    assert "node_modules/dep/index.js" not in relative
    assert "src/pkg/core.py" in relative
    assert [item.relative_path for item in listing.main_files] == [
        "README.md",
        "pyproject.toml",
        "main.py",
    ]


def test_git_access_read_file_is_capped(tmp_path: Path) -> None:
    target = tmp_path / "big.py"
    target.write_text("a" * 100, encoding="utf-8")
    access = GitRepositoryAccess(max_file_bytes=10)

    assert access.read_file(target) == "a" * 10


def test_git_access_list_missing_directory_raises(tmp_path: Path) -> None:
    with pytest.raises(RepositoryAccessError) as exc_info:
        GitRepositoryAccess().list_files(tmp_path / "missing")

    assert exc_info.value.operation == "list"


def test_file_analyses_never_exceed_max_concurrency(tmp_path: Path) -> None:
    files = [_file(tmp_path, f"mod_{index}.py") for index in range(10)]
    access = FakeRepositoryAccess(tmp_path, files)
    llm = TrackingLLM(delay_s=0.02)
    analyzer = RepositoryAnalyzer(access, llm, max_concurrency=2)

    analysis = analyzer.analyze("https://example.com/repo.git")

    assert not analysis.partial_analysis
    assert len(analysis.analyses) == 10
    assert llm.calls == 10
    assert 1 <= llm.peak <= 2


def test_parse_failure_releases_checkout_after_running_files_finish(tmp_path: Path) -> None:
    files = [_file(tmp_path, "bad.py")] + [_file(tmp_path, f"mod_{i}.py") for i in range(6)]
    llm = TrackingLLM(delay_s=0.05, broken={"bad.py"})
    in_flight_at_release: list[int] = []

    class ObservedAccess(FakeRepositoryAccess):
        def release(self, handle: Path) -> None:
            in_flight_at_release.append(llm.in_flight)
            super().release(handle)

    access = ObservedAccess(tmp_path, files)
    analyzer = RepositoryAnalyzer(access, llm, max_concurrency=3)

    with pytest.raises(ResponseParseError):
        analyzer.analyze("https://example.com/repo.git")

    assert in_flight_at_release == [0]
    assert access.released == [tmp_path]
    assert llm.calls < 6
