"""
Audit-chain check.

Recomputes the hash chain of audit_events and reports the first event whose
link or digest does not match. Exits 1 when the chain is broken.

Usage:
  python scripts/verify_audit.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.docvault.audit import verify_chain
from app.docvault.config import normalize_database_url


def check_chain(*, database_url: str | None = None) -> int | None:
    db_url = normalize_database_url((database_url or os.environ.get("DATABASE_URL") or "sqlite:///docvault.db").strip())
    engine = create_engine(db_url, future=True)
    try:
        with Session(engine) as s:
            return verify_chain(s)
    finally:
        engine.dispose()


def main() -> None:
    broken = check_chain(database_url=None)
    if broken is not None:
        print(f"Audit chain broken at event {broken}.", flush=True)
        sys.exit(1)
    print("Audit chain intact.", flush=True)


if __name__ == "__main__":
    main()
