from __future__ import annotations

from dataclasses import dataclass
import logging
import posixpath
import re
from typing import Callable, Protocol

from codepolice.config import RepoConfig
from codepolice.errors import ResourceLimitError
from codepolice.github_gateway import RepoFile
from codepolice.models import AnalysisContext, Job, SourceFile
from codepolice.observability import log_event, log_warning
from codepolice.retry import RetryExecutor


LOGGER = logging.getLogger("codepolice.monitor")
MAX_IMPORT_DEPTH = 2
_BINARY_SNIFF_BYTES = 8000
_BINARY_EXTENSIONS = frozenset(
    {
        ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".pdf", ".zip",
        ".gz", ".tgz", ".bz2", ".xz", ".7z", ".jar", ".war", ".class", ".so",
        ".dylib", ".dll", ".exe", ".bin", ".o", ".a", ".pyc", ".woff", ".woff2",
        ".ttf", ".otf", ".eot", ".mp3", ".mp4", ".mov", ".avi", ".wav", ".sqlite",
        ".db", ".psd",
    }
)  # fmt: skip
_JS_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs")


class SourceHost(Protocol):
    def get_file_at(self, path: str, ref: str) -> RepoFile | None: ...


Resolver = Callable[[str, re.Match[str]], tuple[tuple[str, ...], ...]]


@dataclass(frozen=True)
class ImportMatcher:
    """Extracts import statements from one language and maps them to candidate paths."""

    extensions: tuple[str, ...]
    patterns: tuple[re.Pattern[str], ...]
    resolve: Resolver

    def handles(self, path: str) -> bool:
        return path.endswith(self.extensions)

    def candidates(self, path: str, content: str) -> tuple[tuple[str, ...], ...]:
        """One tuple of alternative repo paths per imported module, in source order."""
        found: dict[tuple[str, ...], None] = {}
        for pattern in self.patterns:
            for match in pattern.finditer(content):
                for group in self.resolve(path, match):
                    alternatives: dict[str, None] = {}
                    for candidate in group:
                        normalized = _normalize_repo_path(candidate)
                        if normalized is not None and normalized != path:
                            alternatives[normalized] = None
                    if alternatives:
                        found[tuple(alternatives)] = None
        return tuple(found)


def _by_specifier(resolve: Callable[[str, str], tuple[str, ...]]) -> Resolver:
    return lambda importer, match: (resolve(importer, match.group(1)),)


def _python_stems(importer: str, module: str) -> tuple[str, ...]:
    """Directories (relative) or dotted paths (absolute) a module name can live at."""
    dots = len(module) - len(module.lstrip("."))
    name = module[dots:]
    if dots:
        base = posixpath.dirname(importer)
        for _ in range(dots - 1):
            base = posixpath.dirname(base)
        return (posixpath.join(base, *name.split(".")) if name else base,)
    stem = posixpath.join(*name.split("."))
    return (stem, f"src/{stem}", posixpath.join(posixpath.dirname(importer), stem))


def _python_module_paths(importer: str, module: str) -> tuple[str, ...]:
    stems = _python_stems(importer, module)
    if module.startswith("."):
        return (f"{stems[0]}.py", posixpath.join(stems[0], "__init__.py"))
    stem, src_stem, sibling = stems
    return (f"{stem}.py", posixpath.join(stem, "__init__.py"), f"{src_stem}.py", f"{sibling}.py")


def _imported_names(raw: str) -> tuple[str, ...]:
    names: list[str] = []
    for item in raw.split(","):
        name = item.split(" as ", 1)[0].strip()
        if re.fullmatch(r"[\w.]+", name):
            names.append(name)
    return tuple(names)


def _resolve_python(importer: str, match: re.Match[str]) -> tuple[tuple[str, ...], ...]:
    module = match.group("module")
    if module is None:
        return tuple(
            _python_module_paths(importer, name)
            for name in _imported_names(match.group("modules"))
        )
    package = _python_module_paths(importer, module)
    names = _imported_names(match.group("grouped") or match.group("names") or "")
    if not names:
        return (package,)
    # Each name may be a submodule; otherwise it is defined in the package itself.
    stems = _python_stems(importer, module)[:2]
    return tuple(
        (
            *(f"{stem}/{name}.py" for stem in stems),
            *(f"{stem}/{name}/__init__.py" for stem in stems),
            *package,
        )
        for name in names
        if "." not in name
    ) or (package,)


def _resolve_js(importer: str, specifier: str) -> tuple[str, ...]:
    if not specifier.startswith("."):
        return ()
    stem = posixpath.join(posixpath.dirname(importer), specifier)
    if stem.endswith(_JS_EXTENSIONS + (".json",)):
        return (stem,)
    return (
        *(f"{stem}{ext}" for ext in _JS_EXTENSIONS),
        *(posixpath.join(stem, f"index{ext}") for ext in (".js", ".ts")),
    )


def _resolve_c(importer: str, specifier: str) -> tuple[str, ...]:
    return (posixpath.join(posixpath.dirname(importer), specifier), specifier, f"include/{specifier}")


def _resolve_ruby(importer: str, specifier: str) -> tuple[str, ...]:
    stem = posixpath.join(posixpath.dirname(importer), specifier)
    return (stem if stem.endswith(".rb") else f"{stem}.rb",)


IMPORT_MATCHERS: tuple[ImportMatcher, ...] = (
    ImportMatcher(
        extensions=(".py",),
        patterns=(
            re.compile(
                r"^[ \t]*(?:from[ \t]+(?P<module>\.*[\w.]*)[ \t]+import[ \t]+"
                r"(?:\((?P<grouped>[^)]*)\)|(?P<names>[^\n#;]+))"
                r"|import[ \t]+(?P<modules>[^\n#;]+))",
                re.MULTILINE,
            ),
        ),
        resolve=_resolve_python,
    ),
    ImportMatcher(
        extensions=_JS_EXTENSIONS,
        patterns=(
            re.compile(r"""^\s*import\s+(?:[^'"]*?\s+from\s+)?['"]([^'"]+)['"]""", re.MULTILINE),
            re.compile(r"""^\s*export\s+[^'"]*?\s+from\s+['"]([^'"]+)['"]""", re.MULTILINE),
            re.compile(r"""\brequire\(\s*['"]([^'"]+)['"]\s*\)"""),
        ),
        resolve=_by_specifier(_resolve_js),
    ),
    ImportMatcher(
        extensions=(".c", ".h", ".cc", ".cpp", ".cxx", ".hpp", ".hh"),
        patterns=(re.compile(r'^\s*#\s*include\s+"([^"]+)"', re.MULTILINE),),
        resolve=_by_specifier(_resolve_c),
    ),
    ImportMatcher(
        extensions=(".rb",),
        patterns=(re.compile(r"""^\s*require_relative\s+['"]([^'"]+)['"]""", re.MULTILINE),),
        resolve=_by_specifier(_resolve_ruby),
    ),
)


def matcher_for(path: str) -> ImportMatcher | None:
    for matcher in IMPORT_MATCHERS:
        if matcher.handles(path):
            return matcher
    return None


def is_binary_path(path: str) -> bool:
    return posixpath.splitext(path.lower())[1] in _BINARY_EXTENSIONS


class RepositoryMonitor:
    def __init__(self, *, repo: RepoConfig, host: SourceHost, retry: RetryExecutor) -> None:
        self._repo = repo
        self._host = host
        self._retry = retry

    def fetch_analysis_context(self, job: Job) -> AnalysisContext:
        """Changed files at the head commit plus their imports up to two levels deep."""
        sha = job.head_sha
        cache: dict[str, SourceFile | None] = {}
        skipped: list[str] = []

        changed: list[SourceFile] = []
        for path in job.changed_paths():
            source = self._load(path, sha, depth=0, cache=cache, skipped=skipped)
            if source is not None:
                changed.append(source)

        imported: list[SourceFile] = []
        frontier = [source for source in changed if source.content is not None]
        for depth in range(1, MAX_IMPORT_DEPTH + 1):
            next_frontier: list[SourceFile] = []
            for importer in frontier:
                matcher = matcher_for(importer.path)
                if matcher is None or importer.content is None:
                    continue
                for alternatives in matcher.candidates(importer.path, importer.content):
                    for candidate in alternatives:
                        if candidate in cache:
                            if cache[candidate] is not None:
                                break
                            continue
                        source = self._load(
                            candidate, sha, depth=depth, cache=cache, skipped=skipped
                        )
                        if source is None:
                            continue
                        imported.append(source)
                        if source.content is not None:
                            next_frontier.append(source)
                        break
            frontier = next_frontier

        log_event(
            LOGGER,
            "analysis_context_built",
            changed_file_count=len(changed),
            imported_file_count=len(imported),
            skipped_count=len(skipped),
            fetch_count=len(cache),
        )
        return AnalysisContext(
            repository_id=job.repository_id,
            commit_sha=sha,
            branch=job.branch,
            changed_files=tuple(changed),
            imported_files=tuple(imported),
            commits=job.commits,
            skipped_paths=tuple(skipped),
        )

    def _load(
        self,
        path: str,
        sha: str,
        *,
        depth: int,
        cache: dict[str, SourceFile | None],
        skipped: list[str],
    ) -> SourceFile | None:
        if path in cache:
            return cache[path]
        if is_binary_path(path):
            source: SourceFile | None = SourceFile(path=path, content=None, binary=True, depth=depth)
            cache[path] = source
            return source

        try:
            fetched = self._retry.call(
                "github.get_file_at", lambda: self._host.get_file_at(path, sha)
            )
        except ResourceLimitError:
            fetched = None
            if depth == 0:
                skipped.append(path)
            log_warning(LOGGER, "file_skipped", path=path, reason="too_large")

        if fetched is None:
            cache[path] = None
            return None
        if fetched.size > self._repo.max_file_bytes or len(fetched.data) > self._repo.max_file_bytes:
            if depth == 0:
                skipped.append(path)
            log_warning(LOGGER, "file_skipped", path=path, reason="too_large", size=fetched.size)
            cache[path] = None
            return None

        content = _decode_text(fetched.data)
        source = SourceFile(
            path=path,
            content=content,
            binary=content is None,
            depth=depth,
        )
        cache[path] = source
        return source


def _decode_text(data: bytes) -> str | None:
    if b"\x00" in data[:_BINARY_SNIFF_BYTES]:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _normalize_repo_path(path: str) -> str | None:
    normalized = posixpath.normpath(path)
    if normalized.startswith("../") or normalized in {".", ".."} or normalized.startswith("/"):
        return None
    return normalized
