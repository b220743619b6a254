#!/usr/bin/env python3
"""
Reconcile purchases whose documents were not updated

A purchase whose buy transaction confirmed but whose certificate, metadata or
tokenURI update failed is journaled as documentation_pending. This script
lists those purchases and re-runs the remaining steps.

Usage:
    python scripts/reconcile_documentation.py --list
    python scripts/reconcile_documentation.py --token-id 3
    python scripts/reconcile_documentation.py --all
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from blockchain.contracts import get_contracts
from database import SessionLocal, init_db
from ipfs.pinning import get_pinning_client
from marketplace.product_store import ProductStore
from marketplace.purchase import DocumentationPendingError, PurchaseOrchestrator, PurchaseValidationError


def build_orchestrator() -> PurchaseOrchestrator:
    init_db()
    return PurchaseOrchestrator(get_contracts(), get_pinning_client(), ProductStore(), SessionLocal)


def list_pending(orchestrator: PurchaseOrchestrator) -> list:
    pending = orchestrator.pending_documentation()
    if not pending:
        print("✓ No purchases pending documentation")
    for record in pending:
        print(f"  Token {record['tokenId']}: buyer {record['buyer']}, failed at {record['failedStep']}")
        print(f"    Error: {record['error']}")
    return pending


def resume(orchestrator: PurchaseOrchestrator, token_id: int) -> bool:
    try:
        outcome = orchestrator.resume_documentation(token_id)
    except PurchaseValidationError as e:
        print(f"❌ Token {token_id}: {e}")
        return False
    except DocumentationPendingError as e:
        print(f"❌ Token {token_id}: still pending at {e.failed_step}: {e.cause}")
        return False

    print(f"✓ Token {token_id} documented")
    print(f"  Certificate: {outcome.certificate_url}")
    print(f"  Metadata: {outcome.metadata_uri}")
    print(f"  TX hash: {outcome.update_uri_tx_hash}")
    return True


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Resume pending purchase documentation")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="List pending purchases")
    group.add_argument("--token-id", type=int, help="Resume one token")
    group.add_argument("--all", action="store_true", help="Resume every pending purchase")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    orchestrator = build_orchestrator()

    if args.list:
        list_pending(orchestrator)
        return 0

    if args.token_id is not None:
        return 0 if resume(orchestrator, args.token_id) else 1

    token_ids = sorted({record["tokenId"] for record in list_pending(orchestrator)})
    results = [resume(orchestrator, token_id) for token_id in token_ids]
    print(f"\n{sum(results)}/{len(results)} purchases reconciled")
    return 0 if all(results) else 1


if __name__ == "__main__":
    sys.exit(main())
