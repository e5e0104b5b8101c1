#!/usr/bin/env python
"""
Encrypt secret keys that older databases still hold in clear text.

Databases created before secret keys were wrapped at rest carry a
``privateKeyEnc`` column with each user's raw base64 secret key. Running
this script once wraps every such key under KEY_ENCRYPTION_SECRET and clears
the legacy column. Safe to re-run; rows already migrated are skipped.

Usage:
    KEY_ENCRYPTION_SECRET=... python scripts/wrap_legacy_secret_keys.py
"""
from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from carswipe import create_app  # noqa: E402
from carswipe.legacy_keys import wrap_legacy_secret_keys  # noqa: E402


def main() -> None:
    app = create_app()
    with app.app_context():
        result = wrap_legacy_secret_keys()

    if result["wrapped"] or result["skipped"]:
        print(f"Wrapped {result['wrapped']} secret keys, skipped {result['skipped']}.")
    else:
        print("No clear-text secret keys found.")


if __name__ == "__main__":
    main()
