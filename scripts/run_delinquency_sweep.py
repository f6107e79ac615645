#!/usr/bin/env python3
"""Persist penalty and state changes for every unpaid due as of today."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dues_service.config import Base, SessionLocal, engine, settings  # noqa: E402
from dues_service.core.logging import configure_logging  # noqa: E402
from dues_service.services.dues_ledger import refresh_delinquency  # noqa: E402


def main() -> None:
    configure_logging(settings.log_level, settings.log_format)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        updated_due_ids = refresh_delinquency(session, actor_user_id="delinquency-sweep")
    if updated_due_ids:
        print(f"Delinquency sweep updated dues: {', '.join(str(due_id) for due_id in updated_due_ids)}")
    else:
        print("No dues changed state or penalty.")


if __name__ == "__main__":
    main()
