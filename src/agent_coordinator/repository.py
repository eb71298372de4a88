"""Repository access and per-file code analysis ahead of request understanding."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from agent_coordinator.errors import RepositoryAccessError
from agent_coordinator.llm import GenerationOptions, LLMClient
from agent_coordinator.parsing import parse_llm_json_response
from agent_coordinator.prompts import build_code_analysis_prompt

logger = logging.getLogger(__name__)

CODE_ANALYSIS_STAGE = "code_analysis"

_SKIP_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".idea",
        ".venv",
        "venv",
        ".tox",
        "__pycache__",
        "node_modules",
        "vendor",
        "dist",
        "build",
        "target",
    }
)
_MANIFEST_NAMES = (
    "README.md",
    "package.json",
    "pyproject.toml",
    "setup.py",
    "setup.cfg",
    "requirements.txt",
    "go.mod",
    "Cargo.toml",
    "pom.xml",
    "build.gradle",
    "Gemfile",
    "composer.json",
    "Dockerfile",
)
_LANGUAGES = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".swift": "swift",
    ".vue": "vue",
}


@dataclass(frozen=True)
class RepositoryFile:
    path: Path
    relative_path: str
    size_bytes: int
    language: str | None = None


@dataclass(frozen=True)
class FileListing:
    root: Path
    files: tuple[RepositoryFile, ...]
    main_files: tuple[RepositoryFile, ...]

    def summary(self) -> dict[str, Any]:
        return {
            "root": self.root.name,
            "total_files": len(self.files),
            "main_files": [item.relative_path for item in self.main_files],
        }


@dataclass
class RepositoryAnalysis:
    repository_url: str
    file_structure: dict[str, Any] | None = None
    analyses: list[dict[str, Any]] = field(default_factory=list)
    partial_analysis: bool = False
    error: str | None = None
    duration_ms: float = 0.0

    def to_context(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "repository_url": self.repository_url,
            "file_structure": self.file_structure,
            "analyses": self.analyses,
        }
        if self.partial_analysis:
            payload["partial_analysis"] = True
            payload["error"] = self.error
        return payload


class RepositoryAccess(Protocol):
    def clone_repository(self, url: str) -> Path: ...

    def list_files(self, handle: Path, *, recursive: bool = True) -> FileListing: ...

    def read_file(self, path: Path) -> str: ...

    def release(self, handle: Path) -> None: ...


class GitRepositoryAccess:
    """Shallow git clones into a scratch directory, read from the local filesystem."""

    def __init__(
        self,
        workdir: str | os.PathLike[str] | None = None,
        *,
        clone_timeout_s: float = 120.0,
        main_files_limit: int = 20,
        max_file_bytes: int = 64_000,
    ) -> None:
        self.workdir = Path(workdir) if workdir else None
        self.clone_timeout_s = clone_timeout_s
        self.main_files_limit = main_files_limit
        self.max_file_bytes = max_file_bytes

    def clone_repository(self, url: str) -> Path:
        try:
            if self.workdir is not None:
                self.workdir.mkdir(parents=True, exist_ok=True)
            target = Path(tempfile.mkdtemp(prefix="repo-", dir=self.workdir))
        except OSError as exc:
            raise RepositoryAccessError("clone", url, f"cannot create workdir: {exc}") from exc

        try:
            subprocess.run(
                ["git", "clone", "--depth", "1", "--", url, str(target)],
                check=True,
                capture_output=True,
                text=True,
                timeout=self.clone_timeout_s,
            )
        except subprocess.CalledProcessError as exc:
            self.release(target)
            stderr = (exc.stderr or "").strip()
            raise RepositoryAccessError("clone", url, stderr[:400] or str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            self.release(target)
            raise RepositoryAccessError(
                "clone", url, f"timed out after {self.clone_timeout_s:.0f}s"
            ) from exc
        except OSError as exc:
            self.release(target)
            raise RepositoryAccessError("clone", url, str(exc)) from exc

        logger.info("repository event=cloned url=%s path=%s", url, target)
        return target

    def list_files(self, handle: Path, *, recursive: bool = True) -> FileListing:
        root = Path(handle)
        if not root.is_dir():
            raise RepositoryAccessError("list", str(root), "not a directory")

        files: list[RepositoryFile] = []
        try:
            for current, dirnames, filenames in os.walk(root):
                dirnames[:] = sorted(name for name in dirnames if name not in _SKIP_DIRS)
                if not recursive:
                    dirnames[:] = []
                for name in sorted(filenames):
                    path = Path(current) / name
                    if path.is_symlink() or not path.is_file():
                        continue
                    files.append(
                        RepositoryFile(
                            path=path,
                            relative_path=path.relative_to(root).as_posix(),
                            size_bytes=path.stat().st_size,
                            language=_LANGUAGES.get(path.suffix.lower()),
                        )
                    )
        except OSError as exc:
            raise RepositoryAccessError("list", str(root), str(exc)) from exc

        return FileListing(root=root, files=tuple(files), main_files=self._select_main_files(files))

    def read_file(self, path: Path) -> str:
        try:
            with open(path, "rb") as handle:
                raw = handle.read(self.max_file_bytes + 1)
        except OSError as exc:
            raise RepositoryAccessError("read", str(path), str(exc)) from exc
        return raw[: self.max_file_bytes].decode("utf-8", errors="replace")

    def release(self, handle: Path) -> None:
        shutil.rmtree(handle, ignore_errors=True)

    def _select_main_files(self, files: list[RepositoryFile]) -> tuple[RepositoryFile, ...]:
        eligible = [item for item in files if 0 < item.size_bytes <= self.max_file_bytes]
        manifests = [
            item
            for item in eligible
            if "/" not in item.relative_path and item.path.name in _MANIFEST_NAMES
        ]
        manifests.sort(key=lambda item: _MANIFEST_NAMES.index(item.path.name))
        sources = [item for item in eligible if item.language is not None and item not in manifests]
        sources.sort(key=lambda item: (item.relative_path.count("/"), item.relative_path))
        return tuple((manifests + sources)[: self.main_files_limit])


class RepositoryAnalyzer:
    """Clone, list and analyse the main files of a repository.

    Access failures at any phase degrade to a partial result. Parse failures
    in a per-file analysis are raised and cancel the remaining files.
    """

    def __init__(
        self,
        access: RepositoryAccess,
        llm_client: LLMClient,
        *,
        max_concurrency: int = 4,
        options: GenerationOptions | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.access = access
        self.llm_client = llm_client
        self.max_concurrency = max_concurrency
        self.options = options or GenerationOptions(temperature=0.2, max_output_tokens=2048)

    def analyze(self, repository_url: str) -> RepositoryAnalysis:
        started_at = time.perf_counter()
        try:
            handle = self.access.clone_repository(repository_url)
        except RepositoryAccessError as exc:
            return self._partial(repository_url, None, [], exc, started_at)

        try:
            try:
                listing = self.access.list_files(handle, recursive=True)
            except RepositoryAccessError as exc:
                return self._partial(repository_url, None, [], exc, started_at)

            file_structure = listing.summary()
            analyses: list[dict[str, Any]] = []
            pool = ThreadPoolExecutor(
                max_workers=self.max_concurrency, thread_name_prefix="repo-analysis"
            )
            try:
                futures = [pool.submit(self._analyze_file, item) for item in listing.main_files]
                for future in futures:
                    analyses.append(future.result())
            except RepositoryAccessError as exc:
                return self._partial(repository_url, file_structure, analyses, exc, started_at)
            finally:
                # In-flight files finish before the checkout is released.
                pool.shutdown(wait=True, cancel_futures=True)
        finally:
            self.access.release(handle)

        duration_ms = _duration_ms(started_at)
        logger.info(
            "repository event=analysis_completed url=%s files=%d duration_ms=%.2f",
            repository_url,
            len(analyses),
            duration_ms,
        )
        return RepositoryAnalysis(
            repository_url=repository_url,
            file_structure=file_structure,
            analyses=analyses,
            duration_ms=duration_ms,
        )

    def _analyze_file(self, item: RepositoryFile) -> dict[str, Any]:
        content = self.access.read_file(item.path)
        prompt = build_code_analysis_prompt(item.relative_path, content, item.language)
        raw = self.llm_client.generate_text(prompt, self.options)
        return {
            "file_path": item.relative_path,
            "analysis": parse_llm_json_response(raw, CODE_ANALYSIS_STAGE),
        }

    @staticmethod
    def _partial(
        repository_url: str,
        file_structure: dict[str, Any] | None,
        analyses: list[dict[str, Any]],
        exc: RepositoryAccessError,
        started_at: float,
    ) -> RepositoryAnalysis:
        logger.warning(
            "repository event=partial_analysis url=%s operation=%s reason=%s",
            repository_url,
            exc.operation,
            exc,
        )
        return RepositoryAnalysis(
            repository_url=repository_url,
            file_structure=file_structure,
            analyses=list(analyses),
            partial_analysis=True,
            error=str(exc),
            duration_ms=_duration_ms(started_at),
        )


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
