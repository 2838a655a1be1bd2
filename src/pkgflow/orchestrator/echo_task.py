"""Local deterministic task command for CLI integration tests."""

from __future__ import annotations

import argparse
import hashlib
import json
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the work item back as a task result, or fail on request."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--input", required=True)
    parser.add_argument("--output", required=True)
    parser.add_argument("--variant", default="")
    parser.add_argument("--fail-variant", action="append", default=[])
    parser.add_argument("--fail-kind", default="TaskFailure")
    parser.add_argument("--fail-message", default="echo task failure requested")
    args = parser.parse_args(argv)

    if args.variant and args.variant in args.fail_variant:
        print(  # noqa: T201
            json.dumps({"errorType": args.fail_kind, "errorMessage": args.fail_message}),
            file=sys.stderr,
        )
        return 1

    payload = json.loads(Path(args.input).read_text("utf-8"))
    coordinate = f"{payload.get('package')}@{payload.get('version')}"
    digest = hashlib.sha256(f"{coordinate}:{args.variant}".encode()).hexdigest()
    result = {
        "package": payload.get("package"),
        "version": payload.get("version"),
        "variant": args.variant or None,
        "etag": digest[:32],
        "versionId": digest[32:48],
    }
    Path(args.output).write_text(json.dumps(result, sort_keys=True), "utf-8")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
