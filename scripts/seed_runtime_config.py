#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from google.cloud import firestore

DEFAULT_CONFIG: dict[str, Any] = {
    "schema_version": 1,
    "min_profit": "0.01",
    "source_fee_estimate": "0",
    "destination_fee_estimate": "0",
    "trade_enabled": False,
    "reevaluate_interval_seconds": 5.0,
    "expiry_grace_seconds": 3600.0,
}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(float(raw.strip()))
    except ValueError:
        return default


def parse_args() -> argparse.Namespace:
    bot_collection = (os.getenv("BOT_COLLECTION", "bots").strip("/") or "bots")
    bot_id = (os.getenv("BOT_ID", "bridge-solver").strip() or "bridge-solver").replace("/", "-")
    default_config_doc = os.getenv("FIRESTORE_CONFIG_DOC") or f"{bot_collection}/{bot_id}/config/runtime"

    parser = argparse.ArgumentParser(
        description="Seed the solver runtime config document in Firestore.",
    )

    parser.add_argument(
        "--project-id",
        default=os.getenv("FIRESTORE_PROJECT_ID", ""),
        help="GCP project id. Defaults to FIRESTORE_PROJECT_ID from env.",
    )
    parser.add_argument(
        "--config-doc",
        default=default_config_doc,
        help="Firestore target path. If odd segments are given, a doc id is auto-appended.",
    )
    parser.add_argument(
        "--leaf-doc-id",
        default=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
        help="Doc id to append when --config-doc is a collection path.",
    )
    parser.add_argument(
        "--credentials",
        default=os.getenv("FIREBASE_CREDENTIALS", ""),
        help="Service account json path. Defaults to FIREBASE_CREDENTIALS from env.",
    )
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Replace the full document (merge=false).",
    )
    parser.add_argument(
        "--print-only",
        action="store_true",
        help="Print resolved doc path and payload without writing to Firestore.",
    )

    parser.add_argument(
        "--schema-version",
        type=int,
        default=max(1, env_int("CONFIG_SCHEMA_VERSION", DEFAULT_CONFIG["schema_version"])),
    )
    parser.add_argument(
        "--min-profit",
        default=DEFAULT_CONFIG["min_profit"],
        help="Minimum profit in the quote currency, as a decimal string.",
    )
    parser.add_argument("--source-fee-estimate", default=DEFAULT_CONFIG["source_fee_estimate"])
    parser.add_argument("--destination-fee-estimate", default=DEFAULT_CONFIG["destination_fee_estimate"])
    parser.add_argument(
        "--trade-enabled",
        action="store_true",
        help="Set trade_enabled=true. Omit to keep false by default.",
    )
    parser.add_argument(
        "--reevaluate-interval-seconds",
        type=float,
        default=DEFAULT_CONFIG["reevaluate_interval_seconds"],
    )
    parser.add_argument(
        "--expiry-grace-seconds",
        type=float,
        default=DEFAULT_CONFIG["expiry_grace_seconds"],
    )

    return parser.parse_args()


def resolve_credentials_path(raw_path: str, repo_root: Path) -> str:
    path = raw_path.strip()
    if not path:
        return ""

    if path.startswith("/app/"):
        mapped = repo_root / path.removeprefix("/app/")
        if mapped.exists():
            return str(mapped)

    return path


def normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
    normalized = doc_path.strip("/")
    if not normalized:
        raise ValueError("FIRESTORE_CONFIG_DOC is empty.")

    segments = [part for part in normalized.split("/") if part]
    if len(segments) % 2 == 0:
        return normalized, False

    return f"{normalized}/{leaf_doc_id}", True


def build_payload(args: argparse.Namespace) -> dict[str, Any]:
    # decimals stay strings so Firestore never rounds them through a float
    return {
        "schema_version": max(1, int(args.schema_version)),
        "min_profit": str(args.min_profit),
        "source_fee_estimate": str(args.source_fee_estimate),
        "destination_fee_estimate": str(args.destination_fee_estimate),
        "trade_enabled": bool(args.trade_enabled),
        "reevaluate_interval_seconds": max(0.5, float(args.reevaluate_interval_seconds)),
        "expiry_grace_seconds": max(0.0, float(args.expiry_grace_seconds)),
    }


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")

    args = parse_args()

    target_doc_path, path_auto_fixed = normalize_doc_path(args.config_doc, args.leaf_doc_id)
    payload = build_payload(args)

    if path_auto_fixed:
        print(
            f"[info] --config-doc '{args.config_doc}' is a collection path. "
            f"Using document path '{target_doc_path}'."
        )

    credentials_path = resolve_credentials_path(args.credentials, repo_root)
    if credentials_path:
        os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = credentials_path

    project_id = args.project_id.strip()
    if not project_id:
        raise ValueError("FIRESTORE_PROJECT_ID is required (set env or --project-id).")

    print(f"[info] project_id={project_id}")
    print(f"[info] target_doc={target_doc_path}")
    print(f"[info] merge={not args.replace}")
    print("[info] payload=")
    print(json.dumps(payload, ensure_ascii=False, indent=2))

    if args.print_only:
        print("[info] print-only mode: skipped Firestore write")
        return

    client = firestore.Client(project=project_id)
    doc_ref = client.document(target_doc_path)
    doc_ref.set(payload, merge=not args.replace)

    print("[ok] Runtime config seeded successfully")


if __name__ == "__main__":
    main()
