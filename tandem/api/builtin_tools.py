"""Built-in workspace tools: file read/write/edit, glob, grep, shell, git.

All paths are resolved against the workspace directory and may not escape
it. Every handler returns an MCP-format response and reports its own
failures with ``isError`` so ToolDispatcher can mark the tool result.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import re
import shlex
from pathlib import Path
from typing import Any

from tandem.api.tools import ToolDispatcher, mcp_response
from tandem.config import Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 600  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_GLOB_RESULTS = 500
_MAX_GREP_LINES = 500

_BLOCKED_COMMANDS = ("rm -rf /", "sudo ", "mkfs", "dd if=", "> /dev/sd")


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve ``path_str`` inside workspace_dir.

    Raises ValueError if the path escapes the workspace.
    """
    workspace = Path(workspace_dir).resolve()
    candidate = Path(path_str)
    target = candidate.resolve() if candidate.is_absolute() else (workspace / candidate).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


def _truncate(text: str, label: str = "output") -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


async def _run_process(
    *args: str,
    shell: bool,
    cwd: Path,
    timeout: float,
) -> tuple[str, str, int | None]:
    """Run a subprocess; returns (stdout, stderr, returncode). Kills it on timeout or cancel."""
    if shell:
        proc = await asyncio.create_subprocess_shell(
            args[0], stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE, cwd=str(cwd)
        )
    else:
        proc = await asyncio.create_subprocess_exec(
            *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE, cwd=str(cwd)
        )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        proc.kill()
        await proc.wait()
        raise
    return (
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
        proc.returncode,
    )


def _format_process_output(stdout: str, stderr: str, returncode: int | None) -> str:
    parts = []
    if stdout:
        parts.append(_truncate(stdout))
    if stderr:
        parts.append(f"STDERR:\n{_truncate(stderr, 'stderr')}")
    if returncode:
        parts.append(f"Exit code: {returncode}")
    return "\n".join(parts) if parts else "(no output)"


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_file_tool(
    file_path: str,
    offset: int = 0,
    limit: int = 0,
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Read a file. With offset/limit, returns numbered lines."""
    try:
        target = _validate_path(file_path, _workspace_dir)
        if not target.exists():
            return mcp_response(f"File not found: {file_path}", is_error=True)
        if not target.is_file():
            return mcp_response(f"Not a file: {file_path}", is_error=True)

        file_size = target.stat().st_size
        if file_size > _MAX_FILE_SIZE and not limit:
            return mcp_response(
                f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
                "Use offset/limit to read portions.",
                is_error=True,
            )

        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")

        if offset > 0 or limit > 0:
            lines = content.splitlines()
            end = offset + limit if limit > 0 else len(lines)
            selected = lines[offset:end]
            content = "\n".join(f"{offset + i + 1}→{line}" for i, line in enumerate(selected))

        return mcp_response(content if content else "(empty file)")

    except ValueError as e:
        return mcp_response(str(e), is_error=True)
    except OSError as e:
        logger.warning("read_file failed for %s: %s", file_path, e)
        return mcp_response(f"Error reading file: {e}", is_error=True)


async def write_file_tool(
    file_path: str,
    content: str,
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Write content to a file, creating parent directories."""
    try:
        target = _validate_path(file_path, _workspace_dir)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        return mcp_response(f"File written successfully: {target}\nSize: {len(content):,} bytes")

    except ValueError as e:
        return mcp_response(str(e), is_error=True)
    except OSError as e:
        logger.warning("write_file failed for %s: %s", file_path, e)
        return mcp_response(f"Error writing file: {e}", is_error=True)


async def edit_file_tool(
    file_path: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Replace old_string with new_string (first occurrence unless replace_all)."""
    try:
        target = _validate_path(file_path, _workspace_dir)
        if not target.is_file():
            return mcp_response(f"File not found: {file_path}", is_error=True)

        content = await asyncio.to_thread(target.read_text, encoding="utf-8")
        count = content.count(old_string)
        if not old_string or count == 0:
            return mcp_response(f"String not found in file: {old_string!r}", is_error=True)

        if replace_all:
            content = content.replace(old_string, new_string)
        else:
            content = content.replace(old_string, new_string, 1)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")

        replaced = count if replace_all else 1
        return mcp_response(f"File edited successfully: {target} ({replaced} replacement(s))")

    except ValueError as e:
        return mcp_response(str(e), is_error=True)
    except OSError as e:
        logger.warning("edit_file failed for %s: %s", file_path, e)
        return mcp_response(f"Error editing file: {e}", is_error=True)


async def glob_files_tool(
    pattern: str,
    path: str = ".",
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """List files under ``path`` matching a glob pattern."""
    try:
        root = _validate_path(path, _workspace_dir)

        def _glob() -> list[str]:
            return sorted(str(p.relative_to(root)) for p in root.glob(pattern) if p.is_file())

        matches = await asyncio.to_thread(_glob)
        if not matches:
            return mcp_response(f"No files found matching pattern: {pattern}")
        if len(matches) > _MAX_GLOB_RESULTS:
            extra = len(matches) - _MAX_GLOB_RESULTS
            return mcp_response("\n".join(matches[:_MAX_GLOB_RESULTS]) + f"\n... and {extra} more")
        return mcp_response("\n".join(matches))

    except ValueError as e:
        return mcp_response(str(e), is_error=True)


async def grep_search_tool(
    pattern: str,
    path: str = ".",
    glob: str = "*",
    output_mode: str = "files_with_matches",
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Regex search over files. output_mode: files_with_matches, content or count."""
    try:
        root = _validate_path(path, _workspace_dir)
        regex = re.compile(pattern)
    except ValueError as e:
        # re.error subclasses ValueError
        return mcp_response(f"Invalid search: {e}", is_error=True)

    def _search() -> list[str]:
        files = [root] if root.is_file() else sorted(p for p in root.rglob("*") if p.is_file())
        out: list[str] = []
        for file in files:
            if not fnmatch.fnmatch(file.name, glob):
                continue
            try:
                text = file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            rel = file.relative_to(root) if file != root else Path(file.name)
            hits = [(n, line) for n, line in enumerate(text.splitlines(), 1) if regex.search(line)]
            if not hits:
                continue
            if output_mode == "count":
                out.append(f"{rel}:{len(hits)}")
            elif output_mode == "content":
                out.extend(f"{rel}:{n}:{line}" for n, line in hits)
            else:
                out.append(str(rel))
            if len(out) >= _MAX_GREP_LINES:
                break
        return out

    results = await asyncio.to_thread(_search)
    if not results:
        return mcp_response("No matches found")
    return mcp_response(_truncate("\n".join(results[:_MAX_GREP_LINES])))


async def bash_command_tool(
    command: str,
    timeout: int = 120,
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Execute a shell command in the workspace directory."""
    for blocked in _BLOCKED_COMMANDS:
        if blocked in command:
            return mcp_response(f"Dangerous command blocked: {command}", is_error=True)

    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))
    workspace = Path(_workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)
    try:
        stdout, stderr, returncode = await _run_process(
            command, shell=True, cwd=workspace, timeout=effective_timeout
        )
    except asyncio.TimeoutError:
        return mcp_response(f"Command timed out after {effective_timeout}s.\nCommand: {command}", is_error=True)
    except OSError as e:
        return mcp_response(f"Error executing command: {e}", is_error=True)

    return mcp_response(_format_process_output(stdout, stderr, returncode), is_error=bool(returncode))


async def git_command_tool(
    command: str,
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Run ``git <command>`` in the workspace (no shell)."""
    try:
        args = shlex.split(command)
    except ValueError as e:
        return mcp_response(f"Could not parse git command: {e}", is_error=True)
    if args and args[0] == "git":
        args = args[1:]

    try:
        stdout, stderr, returncode = await _run_process(
            "git", *args, shell=False, cwd=Path(_workspace_dir), timeout=60
        )
    except asyncio.TimeoutError:
        return mcp_response(f"git {command} timed out after 60s", is_error=True)
    except OSError as e:
        return mcp_response(f"Git command failed: {e}", is_error=True)

    if returncode:
        return mcp_response(f"Git command failed:\n{_format_process_output(stdout, stderr, returncode)}", is_error=True)
    return mcp_response(stdout or "Command executed successfully")


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_FILE_PATH = {"type": "string", "description": "File path (relative to the workspace, or absolute within it)"}

READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read a file. With offset/limit, returns numbered lines.",
    "properties": {
        "file_path": _FILE_PATH,
        "offset": {"type": "integer", "description": "Line offset (0-indexed)", "minimum": 0},
        "limit": {"type": "integer", "description": "Number of lines (0 = all)", "minimum": 0},
    },
    "required": ["file_path"],
    "additionalProperties": False,
}

WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Write content to a file, creating parent directories",
    "properties": {
        "file_path": _FILE_PATH,
        "content": {"type": "string", "description": "Content to write to the file"},
    },
    "required": ["file_path", "content"],
    "additionalProperties": False,
}

EDIT_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Edit a file by replacing old_string with new_string",
    "properties": {
        "file_path": _FILE_PATH,
        "old_string": {"type": "string", "description": "Text to replace", "minLength": 1},
        "new_string": {"type": "string", "description": "Replacement text"},
        "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
    },
    "required": ["file_path", "old_string", "new_string"],
    "additionalProperties": False,
}

GLOB_FILES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Find files matching a glob pattern",
    "properties": {
        "pattern": {"type": "string", "description": 'Glob pattern like "**/*.py"'},
        "path": {"type": "string", "description": "Directory to search in"},
    },
    "required": ["pattern"],
    "additionalProperties": False,
}

GREP_SEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Search file contents with a regular expression",
    "properties": {
        "pattern": {"type": "string", "description": "Regular expression to search for"},
        "path": {"type": "string", "description": "File or directory to search in"},
        "glob": {"type": "string", "description": "File name filter, e.g. *.py"},
        "output_mode": {"type": "string", "enum": ["files_with_matches", "content", "count"]},
    },
    "required": ["pattern"],
    "additionalProperties": False,
}

BASH_COMMAND_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Execute a shell command in the workspace directory",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 120, max 600)",
            "minimum": 1,
            "maximum": _MAX_BASH_TIMEOUT,
        },
    },
    "required": ["command"],
    "additionalProperties": False,
}

GIT_COMMAND_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": 'Execute a git command, e.g. "status", "log --oneline -5", "diff"',
    "properties": {"command": {"type": "string", "description": "Arguments after `git`"}},
    "required": ["command"],
    "additionalProperties": False,
}

DIRECTOR_FILE_TOOLS = ("read_file", "write_file", "edit_file", "glob_files", "grep_search", "git_command")
ACTOR_FILE_TOOLS = ("read_file", "write_file", "edit_file", "glob_files", "grep_search", "bash_command")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Register the workspace tools, binding workspace_dir from settings."""
    workspace = settings.workspace_dir

    async def _read_file(file_path: str, offset: int = 0, limit: int = 0) -> dict[str, Any]:
        return await read_file_tool(file_path, offset, limit, _workspace_dir=workspace)

    async def _write_file(file_path: str, content: str) -> dict[str, Any]:
        return await write_file_tool(file_path, content, _workspace_dir=workspace)

    async def _edit_file(file_path: str, old_string: str, new_string: str, replace_all: bool = False) -> dict[str, Any]:
        return await edit_file_tool(file_path, old_string, new_string, replace_all, _workspace_dir=workspace)

    async def _glob_files(pattern: str, path: str = ".") -> dict[str, Any]:
        return await glob_files_tool(pattern, path, _workspace_dir=workspace)

    async def _grep_search(
        pattern: str, path: str = ".", glob: str = "*", output_mode: str = "files_with_matches"
    ) -> dict[str, Any]:
        return await grep_search_tool(pattern, path, glob, output_mode, _workspace_dir=workspace)

    async def _bash_command(command: str, timeout: int = 120) -> dict[str, Any]:
        return await bash_command_tool(command, timeout, _workspace_dir=workspace)

    async def _git_command(command: str) -> dict[str, Any]:
        return await git_command_tool(command, _workspace_dir=workspace)

    dispatcher.register("read_file", _read_file, READ_FILE_SCHEMA)
    dispatcher.register("write_file", _write_file, WRITE_FILE_SCHEMA)
    dispatcher.register("edit_file", _edit_file, EDIT_FILE_SCHEMA)
    dispatcher.register("glob_files", _glob_files, GLOB_FILES_SCHEMA)
    dispatcher.register("grep_search", _grep_search, GREP_SEARCH_SCHEMA)
    dispatcher.register("bash_command", _bash_command, BASH_COMMAND_SCHEMA)
    dispatcher.register("git_command", _git_command, GIT_COMMAND_SCHEMA)
