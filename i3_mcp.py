#!/usr/bin/env python3
"""
i3wm MCP Server

Model Context Protocol server bridging tool calls to the i3 window manager.
Provides four tools: layout tree retrieval, workspace listing, window search
by name/class/instance, and raw i3 command execution.
"""

import argparse
import json
import logging
import os
import subprocess
import sys
from typing import Annotated, Any, Dict, List, Mapping, Optional, Protocol
from enum import Enum

import anyio
from mcp.server.fastmcp import FastMCP
from mcp.server.stdio import stdio_server
from mcp.shared.message import SessionMessage
from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError, field_validator

logger = logging.getLogger(__name__)
traffic_logger = logging.getLogger(f"{__name__}.traffic")

# Constants
DEFAULT_I3MSG = "i3-msg"
DEFAULT_TIMEOUT = 5.0
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ============================================================================
# Enums and Models
# ============================================================================

class NodeType(str, Enum):
    """Container types reported in the i3 layout tree."""
    ROOT = "root"
    OUTPUT = "output"
    CON = "con"
    FLOATING_CON = "floating_con"
    WORKSPACE = "workspace"
    DOCKAREA = "dockarea"


class WindowProperties(BaseModel):
    """X11 properties of a window node."""
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    window_class: Optional[str] = Field(default=None, alias="class")
    instance: Optional[str] = None
    title: Optional[str] = None
    window_role: Optional[str] = None


class LayoutNode(BaseModel):
    """
    A node in the i3 layout tree.

    Keys i3 reports beyond the ones declared here (rect, layout, marks, ...)
    are kept so that the tree can be handed back to clients verbatim.
    """
    model_config = ConfigDict(extra='allow')

    id: int = 0
    type: str = NodeType.CON.value
    name: Optional[str] = None
    window: Optional[int] = None
    window_properties: WindowProperties = Field(default_factory=WindowProperties)
    focused: bool = False
    nodes: List["LayoutNode"] = Field(default_factory=list)
    floating_nodes: List["LayoutNode"] = Field(default_factory=list)

    @property
    def is_window(self) -> bool:
        """Only containers holding an X11 window have a non-zero window id."""
        return bool(self.window)


class LayoutTree(RootModel[Dict[str, Any]]):
    """A layout tree encoded exactly as i3 reported it."""


class Workspace(BaseModel):
    """A workspace as reported by i3, passed through unchanged."""
    model_config = ConfigDict(extra='allow')

    num: int
    name: str
    visible: bool
    focused: bool


class MatchCriteria(BaseModel):
    """Case-insensitive substring filters. An empty field matches everything."""
    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    name: str = Field(
        default="",
        description="Match window title (case-insensitive substring match)"
    )
    window_class: str = Field(
        default="",
        alias="class",
        description="Match window class (e.g. firefox, Alacritty)"
    )
    instance: str = Field(
        default="",
        description="Match window instance"
    )


class WindowDescriptor(BaseModel):
    """A window found by FindWindows."""
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    con_id: int = Field(description="Container id, usable as [con_id=...] in RunCommand")
    name: str
    window_class: str = Field(alias="class")
    instance: str
    workspace: str = Field(description="Name of the enclosing workspace, empty if none")
    focused: bool


class CommandOutcome(BaseModel):
    """Result of one sub-command of a RunCommand call."""
    success: bool
    error: Optional[str] = None


class WorkspacesOutput(BaseModel):
    workspaces: List[Workspace]


class FindWindowsOutput(BaseModel):
    windows: List[WindowDescriptor]


class RunCommandOutput(BaseModel):
    results: List[CommandOutcome]


# ============================================================================
# Configuration
# ============================================================================

class Settings(BaseModel):
    """Server settings, read from I3_MCP_* environment variables."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid'
    )

    i3msg: str = Field(
        default=DEFAULT_I3MSG,
        min_length=1,
        description="Path of the i3-msg binary"
    )
    socket_path: Optional[str] = Field(
        default=None,
        description="i3 IPC socket path; i3-msg discovers it when unset"
    )
    timeout: float = Field(
        default=DEFAULT_TIMEOUT,
        gt=0,
        description="Seconds before an i3-msg call is abandoned"
    )
    log_level: str = Field(
        default="WARNING",
        description="Log level for stderr output"
    )

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return level

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the environment, ignoring unset or empty variables."""
        if environ is None:
            environ = os.environ
        mapping = {
            "i3msg": "I3_MCP_I3MSG",
            "socket_path": "I3_MCP_SOCKET",
            "timeout": "I3_MCP_TIMEOUT",
            "log_level": "I3_MCP_LOG_LEVEL",
        }
        values = {
            field: environ[var]
            for field, var in mapping.items()
            if environ.get(var)
        }
        return cls(**values)


def configure_logging(level: str, debug_path: Optional[str] = None) -> None:
    """
    Send logs to stderr, keeping stdout free for the stdio transport.

    When debug_path is given, everything at DEBUG and above (including the
    request/response traffic logged by the mcp package) is also appended there.
    """
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(getattr(logging, level.upper(), logging.WARNING))
    handlers: List[logging.Handler] = [stderr_handler]
    root_level = stderr_handler.level

    if debug_path:
        file_handler = logging.FileHandler(debug_path, mode="a")
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)
        root_level = logging.DEBUG

    logging.basicConfig(level=root_level, format=LOG_FORMAT, handlers=handlers)


# ============================================================================
# i3 Gateway
# ============================================================================

class I3Error(Exception):
    """An i3 IPC call failed: i3 unreachable, timeout, or malformed reply."""


class I3Gateway(Protocol):
    """The four IPC operations the server needs from i3."""

    def get_version(self) -> Dict[str, Any]: ...

    def get_tree(self) -> LayoutNode: ...

    def get_workspaces(self) -> List[Workspace]: ...

    def run_command(self, command: str) -> List[Dict[str, Any]]: ...


class I3MsgGateway:
    """
    I3Gateway backed by the i3-msg binary.

    Each call runs i3-msg once and parses its JSON reply. Nothing is retried.
    """

    def __init__(
        self,
        i3msg: str = DEFAULT_I3MSG,
        socket_path: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.i3msg = i3msg
        self.socket_path = socket_path
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "I3MsgGateway":
        return cls(settings.i3msg, settings.socket_path, settings.timeout)

    def _fail(self, message: str) -> I3Error:
        logger.debug("i3-msg failed: %s", message)
        return I3Error(message)

    def _query(self, msg_type: str, payload: Optional[str] = None) -> Any:
        """
        Run `i3-msg -t <msg_type> [payload]` and return the decoded reply.

        Args:
            msg_type: i3 message type, e.g. 'get_tree' or 'command'
            payload: Message payload (the command string for 'command')

        Returns:
            The JSON-decoded reply

        Raises:
            I3Error: If i3-msg cannot be run, times out, or does not reply with JSON
        """
        args = [self.i3msg]
        if self.socket_path:
            args += ["-s", self.socket_path]
        args += ["-t", msg_type]
        if payload is not None:
            args.append(payload)

        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                encoding="utf-8",
                timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise self._fail(f"{self.i3msg} not found; is i3 installed?") from e
        except subprocess.TimeoutExpired as e:
            raise self._fail(
                f"i3-msg -t {msg_type} timed out after {self.timeout:g} seconds"
            ) from e

        # i3-msg exits non-zero when any sub-command fails but still prints
        # the full result list, so only queries treat the exit status as fatal.
        if result.returncode != 0 and msg_type != "command":
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            raise self._fail(f"i3-msg -t {msg_type} failed: {detail}")

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            raise self._fail(f"Failed to parse i3-msg output: {detail}") from e

    def get_version(self) -> Dict[str, Any]:
        reply = self._query("get_version")
        if not isinstance(reply, dict):
            raise self._fail("malformed get_version reply")
        return reply

    def get_tree(self) -> LayoutNode:
        reply = self._query("get_tree")
        try:
            return LayoutNode.model_validate(reply)
        except ValidationError as e:
            raise self._fail(f"malformed get_tree reply: {e}") from e

    def get_workspaces(self) -> List[Workspace]:
        reply = self._query("get_workspaces")
        if not isinstance(reply, list):
            raise self._fail("malformed get_workspaces reply")
        try:
            return [Workspace.model_validate(ws) for ws in reply]
        except ValidationError as e:
            raise self._fail(f"malformed get_workspaces reply: {e}") from e

    def run_command(self, command: str) -> List[Dict[str, Any]]:
        reply = self._query("command", command)
        if not isinstance(reply, list) or not all(isinstance(r, dict) for r in reply):
            raise self._fail("malformed command reply")
        return reply


# ============================================================================
# Window Search
# ============================================================================

def contains_ignore_case(s: str, substr: str) -> bool:
    """Case-insensitive substring test."""
    return substr.lower() in s.lower()


def _matches(node: LayoutNode, criteria: MatchCriteria) -> bool:
    props = node.window_properties
    checks = (
        (criteria.name, node.name),
        (criteria.window_class, props.window_class),
        (criteria.instance, props.instance),
    )
    return all(
        contains_ignore_case(value or "", wanted)
        for wanted, value in checks
        if wanted
    )


def _find_windows_recursive(
    node: Optional[LayoutNode],
    workspace: str,
    criteria: MatchCriteria,
    results: List[WindowDescriptor],
) -> None:
    if node is None:
        return

    # Workspace context applies to this subtree only
    if node.type == NodeType.WORKSPACE:
        workspace = node.name or ""

    if node.is_window and _matches(node, criteria):
        props = node.window_properties
        results.append(WindowDescriptor(
            con_id=node.id,
            name=node.name or "",
            window_class=props.window_class or "",
            instance=props.instance or "",
            workspace=workspace,
            focused=node.focused,
        ))

    for child in node.nodes:
        _find_windows_recursive(child, workspace, criteria, results)
    for child in node.floating_nodes:
        _find_windows_recursive(child, workspace, criteria, results)


def find_windows(root: Optional[LayoutNode], criteria: MatchCriteria) -> List[WindowDescriptor]:
    """
    Search the layout tree for windows matching all non-empty criteria.

    The walk is pre-order depth-first, tiled children before floating ones,
    so results come back in tree order. Each window reports the name of its
    nearest workspace ancestor, or an empty string when it has none.

    Args:
        root: Root of the tree to search
        criteria: Name/class/instance filters

    Returns:
        Matching windows in traversal order
    """
    results: List[WindowDescriptor] = []
    _find_windows_recursive(root, "", criteria, results)
    return results


# ============================================================================
# Command Execution
# ============================================================================

def run_command(gateway: I3Gateway, command: str) -> List[CommandOutcome]:
    """
    Run an i3 command string and report one outcome per sub-command.

    The command is passed to i3 untouched. A failing sub-command is reported
    in its outcome; only a failure of the IPC call itself raises.

    Raises:
        I3Error: If i3 could not be reached or its reply was malformed
    """
    outcomes = []
    for result in gateway.run_command(command):
        success = bool(result.get("success", False))
        error = None if success else (result.get("error") or "")
        if not success:
            logger.warning("i3 command %r failed: %s", command, error)
        outcomes.append(CommandOutcome(success=success, error=error))
    return outcomes


# ============================================================================
# MCP Server
# ============================================================================

def create_server(gateway: I3Gateway) -> FastMCP:
    """
    Build the MCP server for the given gateway.

    The i3 version is queried first so an unreachable i3 is reported before
    any client connects.

    Raises:
        I3Error: If the version check fails
    """
    version = gateway.get_version()
    logger.info("Connected to i3 %s", version.get("human_readable", "(unknown version)"))

    mcp = FastMCP("i3")

    @mcp.tool(
        name="GetTree",
        annotations={
            "title": "Get i3 Layout Tree",
            "readOnlyHint": True,
            "destructiveHint": False,
            "idempotentHint": True,
            "openWorldHint": False
        }
    )
    async def get_tree() -> LayoutTree:
        """
        Gets the i3 layout tree.

        Returns the complete tree as reported by i3: root, outputs, workspaces,
        containers and windows, each with its nodes and floating_nodes.
        """
        tree = gateway.get_tree()
        return LayoutTree(tree.model_dump(mode="json", by_alias=True, exclude_unset=True))

    @mcp.tool(
        name="GetWorkspaces",
        annotations={
            "title": "Get i3 Workspaces",
            "readOnlyHint": True,
            "destructiveHint": False,
            "idempotentHint": True,
            "openWorldHint": False
        }
    )
    async def get_workspaces() -> WorkspacesOutput:
        """Gets the details about i3's current workspaces."""
        return WorkspacesOutput(workspaces=gateway.get_workspaces())

    @mcp.tool(
        name="FindWindows",
        annotations={
            "title": "Find i3 Windows",
            "readOnlyHint": True,
            "destructiveHint": False,
            "idempotentHint": True,
            "openWorldHint": False
        }
    )
    async def find_windows_tool(params: MatchCriteria) -> FindWindowsOutput:
        """
        Searches for windows matching the given criteria (name, class, or instance).

        Every given criterion must match, each as a case-insensitive substring.
        With no criteria all windows are returned. Returns matching windows with
        their con_id, which can be used with RunCommand.

        Args:
            params (MatchCriteria): Search criteria containing:
                - name (str): Window title substring
                - class (str): Window class substring
                - instance (str): Window instance substring

        Examples:
            - All Firefox windows: params={"class": "firefox"}
            - Terminals on any workspace: params={"name": "terminal"}
            - Every window: params={}
        """
        return FindWindowsOutput(windows=find_windows(gateway.get_tree(), params))


    @mcp.tool(
        name="RunCommand",
        annotations={
            "title": "Run i3 Command",
            "readOnlyHint": False,
            "destructiveHint": True,
            "idempotentHint": False,
            "openWorldHint": False
        }
    )
    async def run_command_tool(
        command: Annotated[str, Field(
            description="The i3 command to execute",
            min_length=1
        )],
    ) -> RunCommandOutput:
        """
        Executes an i3 command.

        Use i3 command syntax, e.g. '[con_id=123] move to workspace 7' or
        '[class="firefox"] focus'. See
        https://i3wm.org/docs/userguide.html#command_criteria for criteria syntax.
        Commands separated by ';' or ',' each get their own result.
        """
        return RunCommandOutput(results=run_command(gateway, command))

    return mcp


# ============================================================================
# Transport
# ============================================================================

async def _relay_messages(source, sink, direction: str) -> None:
    """Forward every message from source to sink, logging it on the way."""
    async with source, sink:
        async for message in source:
            if isinstance(message, SessionMessage):
                body = message.message.model_dump_json(by_alias=True, exclude_none=True)
            else:
                body = repr(message)
            traffic_logger.debug("%s %s", direction, body)
            await sink.send(message)


async def serve(server: FastMCP, read_stream, write_stream, log_traffic: bool = False) -> None:
    """
    Serve MCP sessions over an already-open pair of message streams.

    With log_traffic, every request read and every response written is logged
    at DEBUG on the i3_mcp.traffic logger.
    """
    lowlevel = server._mcp_server
    options = lowlevel.create_initialization_options()
    if not log_traffic:
        await lowlevel.run(read_stream, write_stream, options)
        return

    request_send, request_recv = anyio.create_memory_object_stream(0)
    response_send, response_recv = anyio.create_memory_object_stream(0)
    async with anyio.create_task_group() as tg:
        tg.start_soon(_relay_messages, read_stream, request_send, "<-")
        tg.start_soon(_relay_messages, response_recv, write_stream, "->")
        await lowlevel.run(request_recv, response_send, options)
        tg.cancel_scope.cancel()


async def serve_stdio(server: FastMCP, log_traffic: bool = False) -> None:
    async with stdio_server() as (read_stream, write_stream):
        await serve(server, read_stream, write_stream, log_traffic)


# ============================================================================
# Main Entry Point
# ============================================================================

def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="i3-mcp",
        description="MCP server for the i3 window manager (stdio transport)"
    )
    parser.add_argument(
        "--debug",
        metavar="PATH",
        help="append debug logs, including MCP requests and responses, to PATH"
    )
    parser.add_argument(
        "--log-level",
        help="stderr log level (overrides I3_MCP_LOG_LEVEL)"
    )
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env()
        if args.log_level:
            settings.log_level = args.log_level
    except ValidationError as e:
        parser.error(str(e))

    configure_logging(settings.log_level, args.debug)
    if args.debug:
        logger.info("Debug logging enabled, writing to: %s", args.debug)

    try:
        server = create_server(I3MsgGateway.from_settings(settings))
    except I3Error as e:
        logger.error("Failed to create i3 MCP server: %s", e)
        sys.exit(1)

    logger.info("i3 MCP server started")
    # Run the MCP server with stdio transport
    anyio.run(serve_stdio, server, bool(args.debug))


if __name__ == "__main__":
    main()
