from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from typing import Any, Dict, TextIO

from dotenv import load_dotenv

from controlplane.config import load_app_config
from controlplane.core.orchestrator import Orchestrator
from controlplane.errors import ToolError

logger = logging.getLogger("controlplane")


# --------------------------------------------------------------------------------------
# Request loop
# --------------------------------------------------------------------------------------


def handle_line(orchestrator: Orchestrator, line: str) -> Dict[str, Any]:
    """
    Decode one request line and invoke the requested tool.

    A request is a JSON object: {"tool": "name", "tool_input": {...}}.
    An optional "id" is echoed back in the response.
    """
    try:
        request = json.loads(line)
    except json.JSONDecodeError as exc:
        return {"ok": False, "error": {"kind": "ValidationError", "message": f"Invalid JSON: {exc}"}}
    if not isinstance(request, dict) or not isinstance(request.get("tool"), str):
        return {
            "ok": False,
            "error": {"kind": "ValidationError", "message": "Request must be an object with a 'tool' name."},
        }

    response = orchestrator.invoke(request["tool"], request.get("tool_input"))
    if "id" in request:
        response["id"] = request["id"]
    return response


def serve(orchestrator: Orchestrator, stdin: TextIO, stdout: TextIO) -> None:
    """
    Line-oriented JSON request/response loop.

    Runs until EOF on stdin. Each response is written as a single line.
    """
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        response = handle_line(orchestrator, line)
        stdout.write(json.dumps(response, default=str) + "\n")
        stdout.flush()


def _raise_system_exit(signum: int, frame: Any) -> None:
    raise SystemExit(128 + signum)


# --------------------------------------------------------------------------------------
# CLI
# --------------------------------------------------------------------------------------


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Local control plane for shell command tools and the sidecar tool server."
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml. Built-in defaults are used when omitted.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (logs go to stderr).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "serve", help="Start the sidecar and answer JSON tool requests on stdin/stdout."
    )

    exec_parser = subparsers.add_parser(
        "exec", help="Run a single command through the blacklist and print its output."
    )
    exec_parser.add_argument(
        "shell_command",
        help="Shell command line to execute.",
    )
    exec_parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory, relative to the configured root.",
    )
    exec_parser.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help="Timeout in milliseconds.",
    )

    subparsers.add_parser("tools", help="List available tools.")

    subparsers.add_parser(
        "install-sidecar", help="Install the sidecar package when credentials are present."
    )

    return parser.parse_args(argv)


# --------------------------------------------------------------------------------------
# main()
# --------------------------------------------------------------------------------------


def main() -> None:
    # Load environment variables from .env (if present)
    load_dotenv()

    args = parse_args(sys.argv[1:])
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = load_app_config(args.config)
    orchestrator = Orchestrator.from_config(config)

    if args.command == "tools":
        for tool in orchestrator.tools.list_tools():
            print(f"- {tool.name}: {tool.description}")
        return

    if args.command == "install-sidecar":
        ok = orchestrator.supervisor.install()
        raise SystemExit(0 if ok else 1)

    if args.command == "exec":
        try:
            result = orchestrator.runner.run(
                args.shell_command, cwd=args.cwd, timeout_ms=args.timeout_ms
            )
        except ToolError as exc:
            print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
            raise SystemExit(1)
        print(result.output, end="" if result.output.endswith("\n") else "\n")
        return

    if args.command == "serve":
        signal.signal(signal.SIGTERM, _raise_system_exit)
        orchestrator.startup()
        try:
            serve(orchestrator, sys.stdin, sys.stdout)
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            if not orchestrator.shutdown():
                logging.shutdown()
                os._exit(1)
        return

    # Should never reach here
    raise SystemExit(f"Unknown command: {args.command!r}")


if __name__ == "__main__":
    main()
