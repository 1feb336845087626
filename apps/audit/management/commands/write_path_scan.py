from __future__ import annotations

import re
from pathlib import Path

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError


# model -> (forbidden direct write patterns, files allowed to write)
WRITE_PATHS = {
    "AuditEvent": (
        [
            re.compile(r"\bAuditEvent\.objects\.create\s*\("),
            re.compile(r"\bAuditEvent\.objects\.bulk_create\s*\("),
        ],
        {"apps/audit/hooks.py"},
    ),
    "LedgerEntry": (
        [
            re.compile(r"\bLedgerEntry\.objects\.create\s*\("),
            re.compile(r"\bLedgerEntry\.objects\.bulk_create\s*\("),
            re.compile(r"\bLedgerEntry\.objects\.bulk_update\s*\("),
            re.compile(r"\bLedgerEntry\.objects(\.\w+\([^)]*\))*\.update\s*\("),
        ],
        {"apps/customs/store.py", "apps/customs/propagation.py"},
    ),
    "PostedMovement": (
        [
            re.compile(r"\bPostedMovement\.objects\.create\s*\("),
            re.compile(r"\bPostedMovement\.objects\.bulk_create\s*\("),
            re.compile(r"\bPostedMovement\.objects(\.\w+\([^)]*\))*\.update\s*\("),
        ],
        {"apps/customs/store.py"},
    ),
}

EXCLUDE_PARTS = {"venv", ".venv", ".git", "node_modules", "__pycache__", "migrations", "tests"}


def scan(base: Path) -> list[str]:
    hits = []
    for path in base.rglob("*.py"):
        rel_parts = path.relative_to(base).parts
        if any(part in EXCLUDE_PARTS for part in rel_parts):
            continue

        rel = path.relative_to(base).as_posix()
        text = path.read_text(encoding="utf-8", errors="ignore")
        for model, (patterns, allowlist) in WRITE_PATHS.items():
            if rel in allowlist:
                continue
            if any(rx.search(text) for rx in patterns):
                hits.append(f"{rel} ({model})")
    return sorted(set(hits))


class Command(BaseCommand):
    help = (
        "Fail-fast scan for direct writes that bypass the official write paths: "
        "emit_audit_event() for AuditEvent, the ledger store/propagator for LedgerEntry and the store for PostedMovement."
    )

    def handle(self, *args, **options):
        hits = scan(Path(settings.BASE_DIR))

        if hits:
            msg = "Forbidden direct writes detected:\n" + "\n".join(f"- {p}" for p in hits)
            raise CommandError(msg)

        self.stdout.write(self.style.SUCCESS("write_path_scan OK: no forbidden direct writes found"))
