"""Local deterministic agent that mimics the agent CLI stream-json protocol.

Behaviour is steered through environment variables so integration tests can
drive success, failure, conflicts and slow attempts:

``STORY_LOOP_ECHO_FILE``     file name to write (default ``echo_<story>.txt``)
``STORY_LOOP_ECHO_FAIL``     comma-separated story ids that exit non-zero
``STORY_LOOP_ECHO_SLEEP``    seconds to sleep before finishing
``STORY_LOOP_ECHO_BATCHES``  JSON returned as ``result`` in json output mode
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import time
import uuid
from pathlib import Path

_STORY_ID_PATTERN = re.compile(r"\*\*ID:\*\*\s*(\S+)")


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic fake agent session."""

    parser = argparse.ArgumentParser(allow_abbrev=False)
    parser.add_argument("-p", "--prompt", default="")
    parser.add_argument("--output-format", default="text")
    args, _unknown = parser.parse_known_args(argv)

    if args.output_format == "json":
        batches = os.getenv("STORY_LOOP_ECHO_BATCHES", '{"batches": []}')
        _emit({"type": "result", "subtype": "success", "result": batches})
        return 0

    session_id = uuid.uuid4().hex
    match = _STORY_ID_PATTERN.search(args.prompt)
    story_id = match.group(1) if match else "unknown"
    file_name = os.getenv("STORY_LOOP_ECHO_FILE") or f"echo_{story_id}.txt"

    _emit({"type": "system", "subtype": "init", "session_id": session_id})
    _emit(
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {"content": [{"type": "text", "text": f"Working on {story_id}.\n"}]},
        },
    )

    delay = float(os.getenv("STORY_LOOP_ECHO_SLEEP", "0") or 0)
    if delay > 0:
        time.sleep(delay)

    failing = {part.strip() for part in os.getenv("STORY_LOOP_ECHO_FAIL", "").split(",")}
    if story_id in failing:
        print(f"echo agent refused story {story_id}", file=sys.stderr)
        return 1

    Path(file_name).write_text(f"{story_id}\n", "utf-8")
    tool_id = f"toolu_{story_id}"
    _emit(
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {
                "content": [
                    {
                        "type": "tool_use",
                        "id": tool_id,
                        "name": "Write",
                        "input": {"file_path": file_name},
                    },
                ],
            },
        },
    )
    _emit(
        {
            "type": "user",
            "session_id": session_id,
            "message": {"content": [{"type": "tool_result", "tool_use_id": tool_id}]},
        },
    )
    _emit(
        {
            "type": "result",
            "subtype": "success",
            "session_id": session_id,
            "result": f"Done with {story_id}.",
            "num_turns": 2,
        },
    )
    return 0


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
