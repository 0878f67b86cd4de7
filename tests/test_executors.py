"""Tests for the default collaborators and phase executors."""

from pathlib import Path

import pytest

from docflow.core.config import ScanConfig
from docflow.core.errors import ValidationError
from docflow.core.models import FileRef, Workflow
from docflow.workflow.executors import (
    DirectoryModuleIntegrator,
    ExtensionLanguageDetector,
    FileDocumentationExecutor,
    FilesystemContentProvider,
    FilesystemScanner,
    IndexDocLinker,
    LanguageDetectionExecutor,
    MarkdownDocumentWriter,
    MarkdownOverviewGenerator,
    ModuleIntegrationExecutor,
)


@pytest.fixture
def scanner() -> FilesystemScanner:
    defaults = ScanConfig()
    return FilesystemScanner(defaults.include_extensions, defaults.ignore_dirs, defaults.max_files)


class TestFilesystemScanner:
    def test_finds_source_files_in_order(self, scanner, sample_project):
        result = scanner.scan(sample_project)
        assert [f["path"] for f in result["files"]] == ["main.py", "src/app.py", "src/util.py"]
        assert result["total_files"] == 3
        assert result["directories"] == ["src"]
        assert result["markers"] == ["pyproject.toml"]
        assert not result["truncated"]

    def test_skips_ignored_directories(self, scanner, sample_project):
        paths = [f["path"] for f in scanner.scan(sample_project)["files"]]
        assert not any(p.startswith("node_modules") for p in paths)

    def test_reports_sizes(self, scanner, sample_project):
        sizes = {f["path"]: f["size"] for f in scanner.scan(sample_project)["files"]}
        assert sizes["src/app.py"] == (sample_project / "src" / "app.py").stat().st_size

    def test_max_files_truncates(self, sample_project):
        result = FilesystemScanner([".py"], [], max_files=2).scan(sample_project)
        assert result["total_files"] == 2
        assert result["truncated"]

    def test_missing_directory(self, scanner, tmp_path):
        with pytest.raises(FileNotFoundError):
            scanner.scan(tmp_path / "nope")


class TestLanguageDetector:
    def test_counts_and_primary(self):
        files = [{"path": "a.py"}, {"path": "b.py"}, {"path": "c.js"}, {"path": "notes.txt"}]
        result = ExtensionLanguageDetector().detect(files)
        assert result["primary"] == "python"
        assert result["languages"] == {"python": 2, "javascript": 1}

    def test_marker_files_weigh_in(self):
        files = [{"path": "a.js"}, {"path": "b.js"}, {"path": "c.go"}]
        result = ExtensionLanguageDetector().detect(files, markers=["go.mod"])
        assert result["primary"] == "go"

    def test_no_files(self):
        assert ExtensionLanguageDetector().detect([])["primary"] == "unknown"

    def test_executor_override(self):
        wf = Workflow(id="wf", project_path="/p", phase=1)
        wf.phase_results[1] = {"files": [{"path": "a.py"}], "markers": []}
        result = LanguageDetectionExecutor(ExtensionLanguageDetector()).run(wf, {"language": "Rust"})
        assert result["primary"] == "rust"
        assert result["detected"] == "python"


class TestContentProvider:
    def test_reads_file(self, sample_project):
        result = FilesystemContentProvider().read(sample_project, FileRef("src/app.py"))
        assert result["content"] == "def run():\n    return 42\n"
        assert result["language"] == "python"
        assert not result["truncated"]
        assert len(result["sha256"]) == 64

    def test_first_chunk_of_large_file(self, sample_project):
        result = FilesystemContentProvider(max_content_length=5).read(sample_project, FileRef("src/app.py"))
        assert result["content"] == "def r"
        assert result["truncated"]
        assert result["next_offset"] == 5
        assert result["total_chunks"] == 5
        assert result["size"] > 5

    def test_pages_through_large_file(self, sample_project):
        provider = FilesystemContentProvider(max_content_length=5)
        chunks = []
        offset = 0
        while offset is not None:
            chunk = provider.read(sample_project, FileRef("src/app.py"), offset)
            chunks.append(chunk)
            offset = chunk["next_offset"]

        assert "".join(c["content"] for c in chunks) == "def run():\n    return 42\n"
        assert [c["chunk_index"] for c in chunks] == list(range(5))
        assert not chunks[-1]["truncated"]

    def test_rejects_unaligned_or_past_end_offsets(self, sample_project):
        provider = FilesystemContentProvider(max_content_length=5)
        for offset in (-5, 3, 25):
            with pytest.raises(ValidationError):
                provider.read(sample_project, FileRef("src/app.py"), offset)

    def test_rejects_escaping_paths(self, sample_project):
        with pytest.raises(ValidationError):
            FilesystemContentProvider().read(sample_project / "src", FileRef("../main.py"))

    def test_missing_file(self, sample_project):
        with pytest.raises(FileNotFoundError):
            FilesystemContentProvider().read(sample_project, FileRef("gone.py"))


class TestDocumentWriters:
    def test_file_documents(self, tmp_path):
        result = MarkdownDocumentWriter("docs").write(tmp_path, {"src/a.py": "# A", "b.py": "# B\n"})

        assert (tmp_path / "docs" / "files" / "src" / "a.py.md").read_text() == "# A\n"
        assert (tmp_path / "docs" / "files" / "b.py.md").read_text() == "# B\n"
        assert result["documents"] == [
            {"path": "src/a.py", "doc_path": "files/src/a.py.md"},
            {"path": "b.py", "doc_path": "files/b.py.md"},
        ]

    def test_modules_group_by_top_level_directory(self, tmp_path):
        documents = [
            {"path": "main.py", "doc_path": "files/main.py.md"},
            {"path": "src/app.py", "doc_path": "files/src/app.py.md"},
            {"path": "src/deep/util.py", "doc_path": "files/src/deep/util.py.md"},
        ]
        result = DirectoryModuleIntegrator("docs").integrate(
            tmp_path, documents, {"src": "Application code."}
        )

        assert [m["name"] for m in result["modules"]] == ["root", "src"]
        src = result["modules"][1]
        assert src["files"] == ["src/app.py", "src/deep/util.py"]
        assert src["ai_content"]
        text = (tmp_path / "docs" / "modules" / "src.md").read_text()
        assert "Application code." in text
        assert "(../files/src/app.py.md)" in text

    def test_module_input_must_be_strings(self):
        wf = Workflow(id="wf", project_path="/p", phase=3)
        executor = ModuleIntegrationExecutor(DirectoryModuleIntegrator())
        with pytest.raises(ValidationError):
            executor.run(wf, {"modules": {"src": 42}})

    def test_overview_from_phase_results(self, tmp_path):
        results = {
            2: {"primary": "python", "languages": {"python": 2}},
            3: {"documents": [{"path": "a.py", "doc_path": "files/a.py.md"}]},
            4: {"modules": [{"name": "root", "doc_path": "modules/root.md", "files": ["a.py"]}]},
        }
        result = MarkdownOverviewGenerator("docs").generate(tmp_path, results)

        text = (tmp_path / "docs" / "overview.md").read_text()
        assert "Primary language: python" in text
        assert "[root](modules/root.md)" in text
        assert not result["ai_content"]

    def test_overview_with_provided_content(self, tmp_path):
        result = MarkdownOverviewGenerator("docs").generate(tmp_path, {}, content="# Mine")
        assert (tmp_path / "docs" / "overview.md").read_text() == "# Mine\n"
        assert result["ai_content"]

    def test_index_links_everything(self, tmp_path):
        results = {
            3: {"documents": [{"path": "a.py", "doc_path": "files/a.py.md"}]},
            4: {"modules": [{"name": "root", "doc_path": "modules/root.md", "files": ["a.py"]}]},
            5: {"doc_path": "overview.md"},
        }
        result = IndexDocLinker("docs").link(tmp_path, results, title="Demo")

        text = (tmp_path / "docs" / "index.md").read_text()
        assert text.startswith("# Demo Documentation")
        assert "[Overview](overview.md)" in text
        assert "[a.py](files/a.py.md)" in text
        assert result["links"] == 3


class TestFileDocumentationExecutor:
    def test_enumerates_scan_result_by_default(self):
        wf = Workflow(id="wf", project_path="/p", phase=2)
        wf.phase_results[1] = {"files": [{"path": "a.py", "size": 1}]}
        executor = FileDocumentationExecutor(MarkdownDocumentWriter())
        assert executor.enumerate(wf, {}) == [{"path": "a.py", "size": 1}]

    def test_input_files_take_precedence(self):
        wf = Workflow(id="wf", project_path="/p", phase=2)
        wf.phase_results[1] = {"files": [{"path": "a.py"}]}
        executor = FileDocumentationExecutor(MarkdownDocumentWriter())
        assert executor.enumerate(wf, {"files": ["b.py"]}) == ["b.py"]

    def test_input_files_must_be_a_list(self):
        wf = Workflow(id="wf", project_path="/p", phase=2)
        with pytest.raises(ValidationError):
            FileDocumentationExecutor(MarkdownDocumentWriter()).enumerate(wf, {"files": "a.py"})
