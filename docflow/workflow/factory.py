"""Composition root: build a WorkflowController from a DocflowConfig."""

from typing import Optional

from docflow.core.audit import init_audit_logger
from docflow.core.config import DocflowConfig
from docflow.core.store import InMemoryWorkflowStore, SqliteWorkflowStore, WorkflowStore
from docflow.workflow.controller import WorkflowController
from docflow.workflow.executors import (
    ConnectDocsExecutor,
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
    OverviewExecutor,
    ProjectScanExecutor,
)
from docflow.workflow.gate import StepGate
from docflow.workflow.task_queue import TaskQueueManager


def create_store(config: DocflowConfig) -> WorkflowStore:
    if config.storage.backend == "memory":
        return InMemoryWorkflowStore()
    return SqliteWorkflowStore(config.storage.path)


def create_controller(
    config: Optional[DocflowConfig] = None,
    store: Optional[WorkflowStore] = None,
    init_audit: bool = True,
) -> WorkflowController:
    """Wire store, gate, queue manager, executors and the audit logger.

    Args:
        config: Settings (defaults if None)
        store: Pre-built store, overriding ``config.storage``
        init_audit: Install the module-level audit logger if enabled in config
    """
    config = config or DocflowConfig()

    if init_audit and config.audit.enabled:
        init_audit_logger(config.audit.log_dir, retention_days=config.audit.retention_days)

    store = store or create_store(config)
    docs_dir = config.docs.output_dir

    # Generated docs must never be scanned as source
    ignore_dirs = list(config.scan.ignore_dirs)
    top_level_docs = docs_dir.split("/")[0]
    if top_level_docs not in ignore_dirs:
        ignore_dirs.append(top_level_docs)

    executors = {
        1: ProjectScanExecutor(
            FilesystemScanner(
                include_extensions=config.scan.include_extensions,
                ignore_dirs=ignore_dirs,
                max_files=config.scan.max_files,
            )
        ),
        2: LanguageDetectionExecutor(ExtensionLanguageDetector()),
        3: FileDocumentationExecutor(MarkdownDocumentWriter(docs_dir)),
        4: ModuleIntegrationExecutor(DirectoryModuleIntegrator(docs_dir)),
        5: OverviewExecutor(MarkdownOverviewGenerator(docs_dir)),
        6: ConnectDocsExecutor(IndexDocLinker(docs_dir)),
    }

    return WorkflowController(
        store=store,
        gate=StepGate(),
        queue=TaskQueueManager(
            store,
            stale_after=config.workflow.stale_after,
            max_retries=config.workflow.max_retries,
        ),
        executors=executors,
        content_provider=FilesystemContentProvider(config.content.max_content_length),
        expiry=config.workflow.expiry,
    )
