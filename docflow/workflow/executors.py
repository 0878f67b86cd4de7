"""
Phase executors and the collaborators they wrap.

Each collaborator is an ABC with a thin default implementation. The phase
executors adapt a collaborator to the workflow: they pull what they need from
earlier phase results and phase input, and return a JSON-serializable dict
that becomes the committed phase result.

Generated documentation lives under ``<project>/<docs_dir>/``::

    files/<path>.md       one per source file (phase 3)
    modules/<name>.md     one per top-level directory (phase 4)
    overview.md           project overview (phase 5)
    index.md              links to everything above (phase 6)
"""

import hashlib
import os
import re
from abc import ABC, abstractmethod
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from docflow.core.errors import ValidationError
from docflow.core.models import FileRef, Phase, Workflow

EXTENSION_LANGUAGES: Dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".vue": "javascript",
    ".java": "java",
    ".kt": "kotlin",
    ".scala": "scala",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cc": "cpp",
    ".swift": "swift",
}

# Build files that vouch for a language regardless of file counts
MARKER_FILES: Dict[str, str] = {
    "pyproject.toml": "python",
    "setup.py": "python",
    "requirements.txt": "python",
    "package.json": "javascript",
    "tsconfig.json": "typescript",
    "pom.xml": "java",
    "build.gradle": "java",
    "go.mod": "go",
    "Cargo.toml": "rust",
    "Gemfile": "ruby",
    "composer.json": "php",
}

MARKER_WEIGHT = 5


def language_for(path: str) -> str:
    return EXTENSION_LANGUAGES.get(Path(path).suffix.lower(), "unknown")


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content if content.endswith("\n") else content + "\n", encoding="utf-8")


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name) or "root"


# ============================================================================
# Collaborators
# ============================================================================


class ProjectScanner(ABC):
    @abstractmethod
    def scan(self, project_path: Path) -> Dict[str, Any]:
        """Return ``{files: [{path, size}], total_files, directories}``."""


class FilesystemScanner(ProjectScanner):
    """Walk the project tree, keeping source files by extension."""

    def __init__(
        self,
        include_extensions: List[str],
        ignore_dirs: List[str],
        max_files: int = 2000,
    ):
        self.include_extensions = {e.lower() for e in include_extensions}
        self.ignore_dirs = set(ignore_dirs)
        self.max_files = max_files

    def scan(self, project_path: Path) -> Dict[str, Any]:
        root = Path(project_path)
        if not root.is_dir():
            raise FileNotFoundError(f"Project directory not found: {root}")

        files: List[Dict[str, Any]] = []
        directories = set()
        markers = []
        truncated = False

        for dirpath, dirnames, filenames in os.walk(root):
            # Sorted in place so os.walk descends deterministically
            dirnames[:] = sorted(d for d in dirnames if d not in self.ignore_dirs)
            rel_dir = Path(dirpath).relative_to(root)

            for filename in sorted(filenames):
                rel = (rel_dir / filename).as_posix()
                if rel_dir == Path(".") and filename in MARKER_FILES:
                    markers.append(filename)
                if Path(filename).suffix.lower() not in self.include_extensions:
                    continue
                if len(files) >= self.max_files:
                    truncated = True
                    break
                files.append({"path": rel, "size": (Path(dirpath) / filename).stat().st_size})
                if rel_dir != Path("."):
                    directories.add(rel_dir.as_posix())

            if truncated:
                break

        return {
            "files": files,
            "total_files": len(files),
            "directories": sorted(directories),
            "markers": markers,
            "truncated": truncated,
        }


class LanguageDetector(ABC):
    @abstractmethod
    def detect(self, files: List[Dict[str, Any]], markers: Optional[List[str]] = None) -> Dict[str, Any]:
        """Return ``{primary, languages: {language: file_count}}``."""


class ExtensionLanguageDetector(LanguageDetector):
    """Count file extensions; root build files add weight to their language."""

    def detect(self, files: List[Dict[str, Any]], markers: Optional[List[str]] = None) -> Dict[str, Any]:
        counts = Counter(language_for(f["path"]) for f in files)
        counts.pop("unknown", None)

        weights = Counter(counts)
        for marker in markers or []:
            if marker in MARKER_FILES:
                weights[MARKER_FILES[marker]] += MARKER_WEIGHT

        primary = weights.most_common(1)[0][0] if weights else "unknown"
        return {
            "primary": primary,
            "languages": dict(counts.most_common()),
            "markers": list(markers or []),
        }


class FileContentProvider(ABC):
    @abstractmethod
    def read(self, project_path: Path, file_ref: FileRef, offset: int = 0) -> Dict[str, Any]:
        """Return one chunk: ``{path, content, offset, next_offset, chunk_index, total_chunks, ...}``."""


class FilesystemContentProvider(FileContentProvider):
    """Read source files from disk in chunks of ``max_content_length`` chars.

    Files longer than one chunk are paged: ``next_offset`` is the offset of
    the following chunk, or None on the last one.
    """

    def __init__(self, max_content_length: int = 50000):
        self.max_content_length = max_content_length

    def read(self, project_path: Path, file_ref: FileRef, offset: int = 0) -> Dict[str, Any]:
        root = Path(project_path).resolve()
        target = (root / file_ref.path).resolve()
        try:
            target.relative_to(root)
        except ValueError:
            raise ValidationError(
                f"Path escapes the project root: {file_ref.path}",
                context={"path": file_ref.path},
            ) from None

        if not target.is_file():
            raise FileNotFoundError(f"File not found: {file_ref.path}")

        raw = target.read_bytes()
        text = raw.decode("utf-8", errors="replace")
        total_chunks = max(1, (len(text) + self.max_content_length - 1) // self.max_content_length)
        if offset < 0 or offset % self.max_content_length or (offset and offset >= len(text)):
            raise ValidationError(
                f"Invalid offset {offset} for {file_ref.path}",
                context={
                    "path": file_ref.path,
                    "offset": offset,
                    "total_length": len(text),
                    "chunk_size": self.max_content_length,
                },
                hint="Use 0 or a next_offset returned by an earlier read",
            )

        end = offset + self.max_content_length
        next_offset = end if end < len(text) else None
        return {
            "path": file_ref.path,
            "content": text[offset:end],
            "size": len(raw),
            "sha256": hashlib.sha256(raw).hexdigest(),
            "language": language_for(file_ref.path),
            "offset": offset,
            "next_offset": next_offset,
            "chunk_index": offset // self.max_content_length,
            "total_chunks": total_chunks,
            "total_length": len(text),
            "truncated": next_offset is not None,
        }


class DocumentWriter(ABC):
    @abstractmethod
    def write(self, project_path: Path, documents: Dict[str, str]) -> Dict[str, Any]:
        """Persist ``{source_path: markdown}``; return ``{documents, total}``."""


class MarkdownDocumentWriter(DocumentWriter):
    def __init__(self, docs_dir: str = "docflow_docs"):
        self.docs_dir = docs_dir

    def write(self, project_path: Path, documents: Dict[str, str]) -> Dict[str, Any]:
        docs_root = Path(project_path) / self.docs_dir
        written = []
        for source_path, content in documents.items():
            doc_path = f"files/{source_path}.md"
            _write_text(docs_root / doc_path, content)
            written.append({"path": source_path, "doc_path": doc_path})

        return {"docs_dir": self.docs_dir, "documents": written, "total": len(written)}


class ModuleIntegrator(ABC):
    @abstractmethod
    def integrate(
        self,
        project_path: Path,
        documents: List[Dict[str, Any]],
        module_texts: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Group file documents into modules; return ``{modules, total_modules}``."""


class DirectoryModuleIntegrator(ModuleIntegrator):
    """One module per top-level directory; top-level files form ``root``."""

    def __init__(self, docs_dir: str = "docflow_docs"):
        self.docs_dir = docs_dir

    @staticmethod
    def module_of(path: str) -> str:
        parts = path.split("/")
        return parts[0] if len(parts) > 1 else "root"

    def integrate(
        self,
        project_path: Path,
        documents: List[Dict[str, Any]],
        module_texts: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        module_texts = module_texts or {}
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for doc in documents:
            grouped.setdefault(self.module_of(doc["path"]), []).append(doc)

        docs_root = Path(project_path) / self.docs_dir
        modules = []
        for name in sorted(grouped):
            doc_path = f"modules/{_safe_name(name)}.md"
            lines = [f"# Module: {name}", ""]
            if name in module_texts:
                lines += [module_texts[name].strip(), ""]
            lines += ["## Files", ""]
            lines += [f"- [{d['path']}](../{d['doc_path']})" for d in grouped[name]]
            _write_text(docs_root / doc_path, "\n".join(lines))

            modules.append({
                "name": name,
                "doc_path": doc_path,
                "files": [d["path"] for d in grouped[name]],
                "ai_content": name in module_texts,
            })

        return {"modules": modules, "total_modules": len(modules)}


class OverviewGenerator(ABC):
    @abstractmethod
    def generate(
        self,
        project_path: Path,
        phase_results: Dict[int, Any],
        content: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write the project overview; return ``{doc_path, ...}``."""


class MarkdownOverviewGenerator(OverviewGenerator):
    def __init__(self, docs_dir: str = "docflow_docs"):
        self.docs_dir = docs_dir

    def generate(
        self,
        project_path: Path,
        phase_results: Dict[int, Any],
        content: Optional[str] = None,
    ) -> Dict[str, Any]:
        project_path = Path(project_path)
        languages = phase_results.get(Phase.LANGUAGE_DETECTION, {})
        documents = phase_results.get(Phase.FILE_DOCUMENTATION, {}).get("documents", [])
        modules = phase_results.get(Phase.MODULE_INTEGRATION, {}).get("modules", [])

        ai_content = content is not None
        if content is None:
            lines = [
                f"# {project_path.name} Overview",
                "",
                f"- Primary language: {languages.get('primary', 'unknown')}",
                f"- Files documented: {len(documents)}",
                f"- Modules: {len(modules)}",
                "",
            ]
            if languages.get("languages"):
                lines += ["## Languages", "", "| Language | Files |", "|----------|-------|"]
                lines += [f"| {lang} | {n} |" for lang, n in languages["languages"].items()]
                lines.append("")
            if modules:
                lines += ["## Modules", ""]
                lines += [
                    f"- [{m['name']}]({m['doc_path']}) ({len(m['files'])} files)"
                    for m in modules
                ]
            content = "\n".join(lines)

        _write_text(project_path / self.docs_dir / "overview.md", content)
        return {
            "doc_path": "overview.md",
            "ai_content": ai_content,
            "files_documented": len(documents),
            "modules": len(modules),
        }


class DocLinker(ABC):
    @abstractmethod
    def link(
        self,
        project_path: Path,
        phase_results: Dict[int, Any],
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write the documentation index; return ``{doc_path, links}``."""


class IndexDocLinker(DocLinker):
    def __init__(self, docs_dir: str = "docflow_docs"):
        self.docs_dir = docs_dir

    def link(
        self,
        project_path: Path,
        phase_results: Dict[int, Any],
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        project_path = Path(project_path)
        documents = phase_results.get(Phase.FILE_DOCUMENTATION, {}).get("documents", [])
        modules = phase_results.get(Phase.MODULE_INTEGRATION, {}).get("modules", [])
        overview = phase_results.get(Phase.OVERVIEW_GENERATION, {}).get("doc_path")

        lines = [f"# {title or project_path.name} Documentation", ""]
        links = 0
        if overview:
            lines += [f"- [Overview]({overview})", ""]
            links += 1
        if modules:
            lines += ["## Modules", ""]
            lines += [f"- [{m['name']}]({m['doc_path']})" for m in modules]
            lines.append("")
            links += len(modules)
        if documents:
            lines += ["## Files", ""]
            lines += [f"- [{d['path']}]({d['doc_path']})" for d in documents]
            links += len(documents)

        _write_text(project_path / self.docs_dir / "index.md", "\n".join(lines))
        return {
            "doc_path": "index.md",
            "docs_dir": str(project_path / self.docs_dir),
            "links": links,
        }


# ============================================================================
# Phase executors
# ============================================================================


class PhaseExecutor(ABC):
    """Runs one phase against a workflow; the result is committed as-is."""

    phase: Phase

    @abstractmethod
    def run(self, workflow: Workflow, input: Dict[str, Any]) -> Dict[str, Any]:
        ...


class ProjectScanExecutor(PhaseExecutor):
    phase = Phase.PROJECT_SCAN

    def __init__(self, scanner: ProjectScanner):
        self.scanner = scanner

    def run(self, workflow: Workflow, input: Dict[str, Any]) -> Dict[str, Any]:
        return self.scanner.scan(Path(workflow.project_path))


class LanguageDetectionExecutor(PhaseExecutor):
    """Detect languages from the scan; ``input["language"]`` overrides the primary."""

    phase = Phase.LANGUAGE_DETECTION

    def __init__(self, detector: LanguageDetector):
        self.detector = detector

    def run(self, workflow: Workflow, input: Dict[str, Any]) -> Dict[str, Any]:
        scan = workflow.phase_results.get(Phase.PROJECT_SCAN, {})
        result = self.detector.detect(scan.get("files", []), scan.get("markers", []))
        if input.get("language"):
            result["detected"] = result["primary"]
            result["primary"] = str(input["language"]).lower()
        return result


class FileDocumentationExecutor(PhaseExecutor):
    """
    The batch phase. ``run`` only enumerates the files to document; the
    documents themselves arrive task by task and are written by ``finalize``
    once every task is completed.
    """

    phase = Phase.FILE_DOCUMENTATION

    def __init__(self, writer: DocumentWriter):
        self.writer = writer

    def enumerate(self, workflow: Workflow, input: Dict[str, Any]) -> List[Any]:
        if input.get("files") is not None:
            if not isinstance(input["files"], list):
                raise ValidationError("files must be a list of paths or {path} objects")
            return list(input["files"])
        return list(workflow.phase_results.get(Phase.PROJECT_SCAN, {}).get("files", []))

    def run(self, workflow: Workflow, input: Dict[str, Any]) -> Dict[str, Any]:
        return {"files": self.enumerate(workflow, input)}

    def finalize(self, workflow: Workflow, documents: Dict[str, str]) -> Dict[str, Any]:
        return self.writer.write(Path(workflow.project_path), documents)


class ModuleIntegrationExecutor(PhaseExecutor):
    """Group file docs into modules; ``input["modules"]`` maps module → markdown."""

    phase = Phase.MODULE_INTEGRATION

    def __init__(self, integrator: ModuleIntegrator):
        self.integrator = integrator

    def run(self, workflow: Workflow, input: Dict[str, Any]) -> Dict[str, Any]:
        module_texts = input.get("modules") or {}
        if not isinstance(module_texts, dict) or not all(
            isinstance(v, str) for v in module_texts.values()
        ):
            raise ValidationError("modules must map module names to markdown strings")

        documents = workflow.phase_results.get(Phase.FILE_DOCUMENTATION, {}).get("documents", [])
        return self.integrator.integrate(Path(workflow.project_path), documents, module_texts)


class OverviewExecutor(PhaseExecutor):
    phase = Phase.OVERVIEW_GENERATION

    def __init__(self, generator: OverviewGenerator):
        self.generator = generator

    def run(self, workflow: Workflow, input: Dict[str, Any]) -> Dict[str, Any]:
        content = input.get("content")
        if content is not None and not isinstance(content, str):
            raise ValidationError("content must be a markdown string")
        return self.generator.generate(Path(workflow.project_path), workflow.phase_results, content)


class ConnectDocsExecutor(PhaseExecutor):
    phase = Phase.CONNECT_DOCS

    def __init__(self, linker: DocLinker):
        self.linker = linker

    def run(self, workflow: Workflow, input: Dict[str, Any]) -> Dict[str, Any]:
        return self.linker.link(Path(workflow.project_path), workflow.phase_results, input.get("title"))
