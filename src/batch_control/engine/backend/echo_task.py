"""Local demo task command for subprocess executor integration tests."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the task back; ``payload.mode`` selects fail/skip behavior."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--payload-file", required=True)
    args = parser.parse_args(argv)

    document = json.loads(Path(args.payload_file).read_text("utf-8"))
    payload = document.get("payload") or {}
    mode = payload.get("mode", "ok")

    if mode == "fail":
        sys.stderr.write(str(payload.get("error", "echo task failed")) + "\n")
        return 1
    if mode == "skip":
        sys.stderr.write(str(payload.get("reason", "nothing to do")) + "\n")
        return 3

    sys.stdout.write(json.dumps({"echo": document.get("task_id"), "backend": "echo_task"}))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
