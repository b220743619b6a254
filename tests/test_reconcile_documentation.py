"""
Tests for the documentation reconciliation script
"""

import sys
import os
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import CUSTOMER
from blockchain.contracts import ContractRevertError
from marketplace.purchase import DocumentationPendingError
from scripts import reconcile_documentation


def park_purchase(orchestrator, chain):
    chain.failures["updateTokenURI"] = ContractRevertError("nonce too low", "updateTokenURI")
    try:
        orchestrator.purchase(1, "Paris", CUSTOMER)
    except DocumentationPendingError:
        return
    raise AssertionError("purchase should have been parked")


def test_list_and_resume_all(listed_product, orchestrator, chain, capsys):
    park_purchase(orchestrator, chain)

    with patch.object(reconcile_documentation, "build_orchestrator", return_value=orchestrator):
        assert reconcile_documentation.main(["--list"]) == 0
        assert reconcile_documentation.main(["--all"]) == 0

    output = capsys.readouterr().out
    assert "Token 1" in output
    assert "1/1 purchases reconciled" in output
    assert orchestrator.pending_documentation() == []


def test_resume_unknown_token(orchestrator, capsys):
    with patch.object(reconcile_documentation, "build_orchestrator", return_value=orchestrator):
        assert reconcile_documentation.main(["--token-id", "7"]) == 1

    assert "No documentation pending for token 7" in capsys.readouterr().out
