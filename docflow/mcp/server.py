"""docflow MCP Server - drives documentation runs over the Model Context Protocol.

Provides 15 tools for an AI collaborator to walk a project through the
six-phase documentation workflow:

Phases (6):
- step1_start: Scan the project (creates or resumes the workflow)
- step2_start: Detect languages
- step3_start: Build the per-file task queue
- step4_module_integration: Group file docs into module docs
- step5_overview_generation: Write the project overview
- step6_connect_docs: Write the index linking every document

Batch protocol for phase 3 (6):
- step3_get_next_task: Current task (same one until it is completed)
- step3_get_file_content: Source of the dispatched file
- step3_complete_task: Submit the document for a task
- step3_fail_task: Report a task that could not be documented
- step3_retry_task: Unblock a task that exhausted its retries
- step3_check_task_completion: continue_next_file or step_completed

Workflow (3):
- workflow_advance: Commit a deferred batch phase
- workflow_status: Phase, progress and next step
- workflow_list: Known workflows

Batch loop:
  1. step3_get_next_task → task
  2. step3_get_file_content(task_id) → source
  3. step3_complete_task(task_id, content)
  4. repeat until status == "all_completed", then step4_module_integration

Every response carries ``success``; failures carry
``error: {code, message, context}`` and usually a ``hint``.
"""

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from docflow.core.audit import log_audit, log_error
from docflow.core.config import load_config
from docflow.core.errors import DocflowError
from docflow.mcp.validation import (
    ErrorCode,
    error_response,
    exception_response,
    optional_bool,
    optional_int,
    optional_object,
    optional_str,
    require_str,
    success_response,
)
from docflow.workflow.controller import WorkflowController
from docflow.workflow.factory import create_controller

_WORKFLOW_ID = {"type": "string", "description": "Workflow ID returned by step1_start"}
_TASK_ID = {"type": "string", "description": "Task ID returned by step3_get_next_task"}


# ============================================================================
# Tool definitions
# ============================================================================

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "step1_start",
        "description": "Start documenting a project: scans its files. Creates the workflow, or resumes one that has not finished scanning. Call this first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "project_path": {
                    "type": "string",
                    "description": "Absolute path of the project to document",
                },
                "workflow_id": {
                    "type": "string",
                    "description": "Existing workflow to scan (instead of project_path)",
                },
                "fresh": {
                    "type": "boolean",
                    "description": "Supersede any active workflow for this project and start over",
                },
            },
        },
    },
    {
        "name": "step2_start",
        "description": "Detect the project's languages from the scan.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "workflow_id": _WORKFLOW_ID,
                "language": {
                    "type": "string",
                    "description": "Override the detected primary language",
                },
            },
            "required": ["workflow_id"],
        },
    },
    {
        "name": "step3_start",
        "description": "Build the per-file documentation task queue. Then loop on step3_get_next_task.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "workflow_id": _WORKFLOW_ID,
                "files": {
                    "type": "array",
                    "description": "Files to document (defaults to the scan result); paths or {path} objects",
                    "items": {},
                },
            },
            "required": ["workflow_id"],
        },
    },
    {
        "name": "step3_get_next_task",
        "description": "Get the file to document next. Returns the same task until it is completed. status is 'task_available' (with task) or 'all_completed' (with completion_results).",
        "inputSchema": {
            "type": "object",
            "properties": {"workflow_id": _WORKFLOW_ID},
            "required": ["workflow_id"],
        },
    },
    {
        "name": "step3_get_file_content",
        "description": "Read the source of the currently dispatched task's file. Large files come in chunks: call again with next_offset until it is null.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "workflow_id": _WORKFLOW_ID,
                "task_id": _TASK_ID,
                "offset": {
                    "type": "integer",
                    "description": "Character offset of the chunk to read (0 or a returned next_offset)",
                },
            },
            "required": ["workflow_id", "task_id"],
        },
    },
    {
        "name": "step3_complete_task",
        "description": "Submit the markdown document for a dispatched task.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "workflow_id": _WORKFLOW_ID,
                "task_id": _TASK_ID,
                "content": {"type": "string", "description": "Markdown documentation for the file"},
            },
            "required": ["workflow_id", "task_id", "content"],
        },
    },
    {
        "name": "step3_fail_task",
        "description": "Report that a dispatched task could not be documented. It is retried within the retry budget.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "workflow_id": _WORKFLOW_ID,
                "task_id": _TASK_ID,
                "reason": {"type": "string", "description": "Why the task failed"},
            },
            "required": ["workflow_id", "task_id"],
        },
    },
    {
        "name": "step3_retry_task",
        "description": "Return a blocked (failed) task to the queue with a fresh retry budget.",
        "inputSchema": {
            "type": "object",
            "properties": {"workflow_id": _WORKFLOW_ID, "task_id": _TASK_ID},
            "required": ["workflow_id", "task_id"],
        },
    },
    {
        "name": "step3_check_task_completion",
        "description": "Check the batch: 'continue_next_file' or 'step_completed'.",
        "inputSchema": {
            "type": "object",
            "properties": {"workflow_id": _WORKFLOW_ID},
            "required": ["workflow_id"],
        },
    },
    {
        "name": "step4_module_integration",
        "description": "Group the file documents into module documents.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "workflow_id": _WORKFLOW_ID,
                "modules": {
                    "type": "object",
                    "description": "Optional {module_name: markdown} written into each module document",
                },
            },
            "required": ["workflow_id"],
        },
    },
    {
        "name": "step5_overview_generation",
        "description": "Write the project overview document.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "workflow_id": _WORKFLOW_ID,
                "content": {
                    "type": "string",
                    "description": "Optional overview markdown (generated from earlier phases if omitted)",
                },
            },
            "required": ["workflow_id"],
        },
    },
    {
        "name": "step6_connect_docs",
        "description": "Write the index linking every generated document. Completes the workflow.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "workflow_id": _WORKFLOW_ID,
                "title": {"type": "string", "description": "Optional documentation title"},
            },
            "required": ["workflow_id"],
        },
    },
    {
        "name": "workflow_advance",
        "description": "Commit the file-documentation phase once every task is completed.",
        "inputSchema": {
            "type": "object",
            "properties": {"workflow_id": _WORKFLOW_ID},
            "required": ["workflow_id"],
        },
    },
    {
        "name": "workflow_status",
        "description": "Current phase, batch progress and the next required call.",
        "inputSchema": {
            "type": "object",
            "properties": {"workflow_id": _WORKFLOW_ID},
            "required": ["workflow_id"],
        },
    },
    {
        "name": "workflow_list",
        "description": "List workflows, optionally for one project.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "project_path": {"type": "string", "description": "Only workflows for this project"},
                "active_only": {"type": "boolean", "description": "Skip finished and superseded workflows"},
            },
        },
    },
]


# ============================================================================
# Tool Handlers
# ============================================================================


class ToolHandlers:
    """Tool implementations over an injected controller.

    Each handler takes the raw argument dict and returns a response dict;
    engine errors become structured error responses.
    """

    def __init__(self, controller: WorkflowController):
        self.controller = controller
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "step1_start": self.handle_step1_start,
            "step2_start": self.handle_step2_start,
            "step3_start": self.handle_step3_start,
            "step3_get_next_task": self.handle_step3_get_next_task,
            "step3_get_file_content": self.handle_step3_get_file_content,
            "step3_complete_task": self.handle_step3_complete_task,
            "step3_fail_task": self.handle_step3_fail_task,
            "step3_retry_task": self.handle_step3_retry_task,
            "step3_check_task_completion": self.handle_step3_check_task_completion,
            "step4_module_integration": self.handle_step4_module_integration,
            "step5_overview_generation": self.handle_step5_overview_generation,
            "step6_connect_docs": self.handle_step6_connect_docs,
            "workflow_advance": self.handle_workflow_advance,
            "workflow_status": self.handle_workflow_status,
            "workflow_list": self.handle_workflow_list,
        }

    @property
    def tool_names(self) -> List[str]:
        return list(self._handlers)

    def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Dispatch a tool call; never raises."""
        handler = self._handlers.get(name)
        if handler is None:
            return error_response(
                ErrorCode.VALIDATION_ERROR,
                f"Unknown tool: {name}",
                {"tool": name},
                hint="Call list_tools for the available tools",
            )

        try:
            response = handler(arguments or {})
        except DocflowError as e:
            response = exception_response(e)
        except Exception as e:
            log_error(e, {"tool": name})
            response = error_response(
                ErrorCode.SYSTEM_ERROR,
                str(e),
                {"tool": name, "error_type": type(e).__name__},
            )

        details: Dict[str, Any] = {"tool": name, "success": response["success"]}
        if not response["success"]:
            details["error_code"] = response["error"]["code"]
        log_audit("server", "tool_call", details)
        return response

    # ---------------------------------------------------------------- phases

    def handle_step1_start(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.start_phase(
                optional_str(arguments, "workflow_id"),
                1,
                project_path=optional_str(arguments, "project_path"),
                fresh=optional_bool(arguments, "fresh"),
            )
        )

    def handle_step2_start(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        phase_input = {}
        language = optional_str(arguments, "language")
        if language:
            phase_input["language"] = language
        return success_response(
            self.controller.start_phase(require_str(arguments, "workflow_id"), 2, phase_input)
        )

    def handle_step3_start(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        phase_input = {}
        if arguments.get("files") is not None:
            phase_input["files"] = arguments["files"]
        return success_response(
            self.controller.start_phase(require_str(arguments, "workflow_id"), 3, phase_input)
        )

    def handle_step4_module_integration(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.start_phase(
                require_str(arguments, "workflow_id"),
                4,
                {"modules": optional_object(arguments, "modules")},
            )
        )

    def handle_step5_overview_generation(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        phase_input = {}
        if arguments.get("content") is not None:
            phase_input["content"] = arguments["content"]
        return success_response(
            self.controller.start_phase(require_str(arguments, "workflow_id"), 5, phase_input)
        )

    def handle_step6_connect_docs(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        phase_input = {}
        title = optional_str(arguments, "title")
        if title:
            phase_input["title"] = title
        return success_response(
            self.controller.start_phase(require_str(arguments, "workflow_id"), 6, phase_input)
        )

    # ---------------------------------------------------------------- batch

    def handle_step3_get_next_task(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.get_next_task(require_str(arguments, "workflow_id"))
        )

    def handle_step3_get_file_content(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.get_file_content(
                require_str(arguments, "workflow_id"),
                require_str(arguments, "task_id"),
                optional_int(arguments, "offset"),
            )
        )

    def handle_step3_complete_task(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.submit_task_result(
                require_str(arguments, "workflow_id"),
                require_str(arguments, "task_id"),
                arguments.get("content"),
            )
        )

    def handle_step3_fail_task(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.fail_task(
                require_str(arguments, "workflow_id"),
                require_str(arguments, "task_id"),
                optional_str(arguments, "reason") or "",
            )
        )

    def handle_step3_retry_task(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.retry_task(
                require_str(arguments, "workflow_id"),
                require_str(arguments, "task_id"),
            )
        )

    def handle_step3_check_task_completion(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.check_batch_completion(require_str(arguments, "workflow_id"))
        )

    # ---------------------------------------------------------------- workflow

    def handle_workflow_advance(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.advance_phase(require_str(arguments, "workflow_id"))
        )

    def handle_workflow_status(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return success_response(
            self.controller.status(require_str(arguments, "workflow_id"))
        )

    def handle_workflow_list(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        workflows = self.controller.list_workflows(
            project_path=optional_str(arguments, "project_path"),
            active_only=optional_bool(arguments, "active_only"),
        )
        return success_response({"workflows": workflows, "count": len(workflows)})


# ============================================================================
# MCP Server Setup
# ============================================================================


def create_server(handlers: ToolHandlers) -> Server:
    """Create and configure the MCP server."""
    server = Server("docflow")

    @server.list_tools()
    async def list_tools():
        return [Tool(**definition) for definition in TOOL_DEFINITIONS]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict):
        result = handlers.call(name, arguments)
        return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

    return server


async def run_server(config_path: Optional[Path] = None):
    """Run the MCP server over stdio."""
    config = load_config(config_path)
    handlers = ToolHandlers(create_controller(config))
    server = create_server(handlers)

    log_audit("server", "start", {"storage": config.storage.backend, "tools": len(TOOL_DEFINITIONS)})
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def main():
    """CLI entry point for the MCP server."""
    import asyncio

    asyncio.run(run_server())


if __name__ == "__main__":
    main()
