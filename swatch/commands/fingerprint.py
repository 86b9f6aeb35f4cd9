"""swatch fingerprint — print quick fingerprints for files."""
from __future__ import annotations

import os
import sys

from swatch.errors import FingerprintError
from swatch.fingerprint import quick_fingerprint


def cmd_fingerprint(args) -> None:
    failed = False
    for path in args.paths:
        try:
            fp = quick_fingerprint(path)
        except FingerprintError as e:
            print(f"swatch: {e}", file=sys.stderr)
            failed = True
            continue
        size = os.path.getsize(path)
        print(f"{fp.digest}  v{fp.version}  {size:>12}  {path}")
    if failed:
        sys.exit(1)
