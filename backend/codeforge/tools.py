import json
import logging
from typing import Any

from agents import RunContextWrapper, function_tool
from pydantic import BaseModel

from codeforge.context import AgentRunContext
from codeforge.environment.base import CommandOptions
from codeforge.errors import InvalidPathError
from codeforge.paths import is_valid_file_path


logger = logging.getLogger("codeforge.tools")

DEFAULT_COMMAND_TIMEOUT_MS = 60_000
MAX_OUTPUT_CHARS = 8_000
BLOCKED_COMMANDS = ("npm run dev", "npm start")


class FileSpec(BaseModel):
    path: str
    content: str


def _truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated {len(text) - limit} chars]"


async def run_terminal(
    ctx: AgentRunContext, command: str, timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS
) -> dict[str, Any]:
    tool_id = ctx.tool_started("terminal", {"command": command, "timeout_ms": timeout_ms})
    env = ctx.environment
    if any(blocked in command for blocked in BLOCKED_COMMANDS):
        output: dict[str, Any] = {
            "error": "Cannot start dev servers from the terminal tool. Use npm run build instead."
        }
    else:
        try:
            result = await env.run_command(command, CommandOptions(timeout_ms=timeout_ms))
            output = {
                "stdout": _truncate(result.stdout),
                "stderr": _truncate(result.stderr),
                "exit_code": result.exit_code,
            }
            if not env.capabilities.supports_bash:
                output["deferred"] = True
        except Exception as e:
            logger.warning("terminal command failed: %s", str(e))
            output = {"error": f"Command failed: {str(e)}"}
    ctx.tool_completed(tool_id, "terminal", output)
    return output


async def write_files(ctx: AgentRunContext, files: list[FileSpec]) -> dict[str, Any]:
    """Write files to the environment, record them in state and queue file events."""
    tool_id = ctx.tool_started(
        "create_or_update_files", {"paths": [f.path for f in files]}
    )
    written: list[str] = []
    errors: dict[str, str] = {}
    for spec in files:
        try:
            await ctx.environment.write_file(spec.path, spec.content)
        except (InvalidPathError, ValueError) as e:
            errors[spec.path] = str(e)
            continue
        path = spec.path.strip()
        existed = path in ctx.state.files
        ctx.state.files[path] = spec.content
        written.append(path)
        ctx.bus.queue_side_event(
            "file-created",
            {"path": path, "content": spec.content, "updated": existed},
        )
    output: dict[str, Any] = {"success": not errors, "files_written": written}
    if errors:
        output["errors"] = errors
    ctx.tool_completed(tool_id, "create_or_update_files", output)
    return output


async def read_files(ctx: AgentRunContext, paths: list[str]) -> dict[str, Any]:
    tool_id = ctx.tool_started("read_files", {"paths": paths})
    contents = await ctx.environment.read_files(paths)
    output: dict[str, Any] = {}
    for path in paths:
        if path in contents:
            output[path] = _truncate(contents[path], 20_000)
        elif not is_valid_file_path(path):
            output[path] = "[Error reading file: invalid path]"
        else:
            output[path] = "[Error reading file: not found]"
    ctx.tool_completed(tool_id, "read_files", {"paths": list(output)})
    return output


async def list_directory(ctx: AgentRunContext, path: str = ".") -> dict[str, Any]:
    tool_id = ctx.tool_started("list_files", {"path": path})
    try:
        files = await ctx.environment.list_files(path)
        output: dict[str, Any] = {"path": path, "files": files[:500]}
    except InvalidPathError as e:
        output = {"error": str(e)}
    ctx.tool_completed(tool_id, "list_files", output)
    return output


@function_tool
async def terminal(
    ctx: RunContextWrapper[AgentRunContext], command: str, timeout_ms: int | None = None
) -> str:
    """Run a shell command in the project workspace.

    Use for installing packages, running builds or inspecting the project. Do not
    start dev servers here; the preview server is managed for you.

    Args:
        command: Shell command to run from the project root.
        timeout_ms: Optional timeout in milliseconds (default 60000).
    Returns:
        JSON with stdout, stderr and exit_code, or an error.
    """
    output = await run_terminal(ctx.context, command, timeout_ms or DEFAULT_COMMAND_TIMEOUT_MS)
    return json.dumps(output)


@function_tool
async def create_or_update_files(
    ctx: RunContextWrapper[AgentRunContext], files: list[FileSpec]
) -> str:
    """Create or overwrite files with full contents.

    Args:
        files: Files to write, each with a project-relative path and the full content.
    Returns:
        JSON listing the written paths and any per-file errors.
    """
    output = await write_files(ctx.context, files)
    return json.dumps(output)


@function_tool(name_override="read_files")
async def read_files_tool(ctx: RunContextWrapper[AgentRunContext], paths: list[str]) -> str:
    """Read existing files to understand the current code.

    Args:
        paths: Project-relative file paths.
    Returns:
        JSON mapping each path to its content or an error marker.
    """
    output = await read_files(ctx.context, paths)
    return json.dumps(output)


@function_tool
async def list_files(ctx: RunContextWrapper[AgentRunContext], path: str = ".") -> str:
    """List files under a directory (dependency and build folders are skipped).

    Args:
        path: Project-relative directory, "." for the root.
    Returns:
        JSON with the file list.
    """
    output = await list_directory(ctx.context, path)
    return json.dumps(output)


AGENT_TOOLS = [terminal, create_or_update_files, read_files_tool, list_files]
