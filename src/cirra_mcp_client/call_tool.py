#!/usr/bin/env python3
"""
Cirra AI MCP - call a tool.

Usage:
  cirra-call-tool <tool_name> [--arg1 value1] [arg2:value2 ...]
  cirra-call-tool --list

Examples:
  cirra-call-tool search --query "AI agents"
  cirra-call-tool get_document id:doc-123 --limit 5
"""

from __future__ import annotations

import os
import sys
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from .config import CirraConfig
from .errors import CirraError, NoCredentialsError
from .tokens import TokenManager, resolve_credentials
from .transport import McpSession

logger = logging.getLogger(__name__)

USAGE = """\
Usage: cirra-call-tool <tool_name> [--arg value ...]
       cirra-call-tool --list

Examples:
  cirra-call-tool search --query "AI agents"
  cirra-call-tool --list"""


def _reject_constant(name: str) -> Any:
    raise ValueError(f"not a JSON value: {name}")


def parse_value(raw: str) -> Any:
    """JSON if it parses, else the literal string."""
    try:
        return json.loads(raw, parse_constant=_reject_constant)
    except ValueError:
        return raw


def parse_tool_arguments(tokens: Sequence[str]) -> Dict[str, Any]:
    """Turn ``--key value`` and ``key:value`` tokens into tool arguments."""
    params: Dict[str, Any] = {}
    i = 0
    while i < len(tokens):
        arg = tokens[i]
        if arg.startswith("--"):
            key = arg[2:]
            if i + 1 >= len(tokens):
                raise ValueError(f"Missing value for --{key}")
            params[key] = parse_value(tokens[i + 1])
            i += 1
        elif ":" in arg:
            key, _, value = arg.partition(":")
            params[key] = parse_value(value)
        else:
            logger.warning(f"Ignoring argument without a key: {arg!r}")
        i += 1
    return params


def render_result(result: Any) -> List[str]:
    """Format a tools/call result as printable blocks, one per content item."""
    content = result.get("content") if isinstance(result, dict) else None
    if not isinstance(content, list):
        return [json.dumps(result, indent=2)]

    blocks: List[str] = []
    for item in content:
        kind = item.get("type") if isinstance(item, dict) else None
        if kind == "text" and isinstance(item.get("text"), str):
            blocks.append(item["text"])
        elif kind == "image":
            blocks.append(f"[Image: {item.get('mimeType')}]")
        else:
            blocks.append(json.dumps(item, indent=2))
    return blocks


def _configure_logging(environ: Mapping[str, str]) -> None:
    level_name = environ.get("CIRRA_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="[%(levelname)s] %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main(
    argv: list[str],
    config: Optional[CirraConfig] = None,
    client: Optional[httpx.Client] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    env = os.environ if environ is None else environ
    _configure_logging(env)

    if not argv:
        print(USAGE, file=sys.stderr)
        return 1
    if argv[0] in ("-h", "--help"):
        print(USAGE)
        return 0

    try:
        config = config or CirraConfig.from_env(env)
        tool_name: Optional[str] = None
        arguments: Dict[str, Any] = {}
        if argv[0] != "--list":
            tool_name = argv[0]
            arguments = parse_tool_arguments(argv[1:])
        record, source = resolve_credentials(config, env)
    except NoCredentialsError:
        print("No OAuth tokens found.", file=sys.stderr)
        print("Run: cirra-oauth", file=sys.stderr)
        print(f"Or set {config.env_credentials_var} environment variable", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    own_client = client is None
    http = client or httpx.Client(timeout=config.http_timeout)
    try:
        tokens = TokenManager(record, source, config, http)
        session = McpSession(config, tokens, http)

        try:
            session.initialize()
        except CirraError as e:
            print(f"Failed to initialize MCP session: {e}", file=sys.stderr)
            return 1

        try:
            if tool_name is None:
                print(json.dumps(session.list_tools(), indent=2))
            else:
                for block in render_result(session.call_tool(tool_name, arguments)):
                    print(block)
        except CirraError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    finally:
        if own_client:
            http.close()
    return 0


def cli() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
