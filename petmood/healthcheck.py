from __future__ import annotations

import os

from .storage import get_blob_store


def main() -> None:
    get_blob_store().list("uploads/meta/")
    if not os.environ.get("OPENAI_API_KEY", "").strip():
        raise SystemExit("OPENAI_API_KEY is not set")
    print("OK")


if __name__ == "__main__":
    main()
