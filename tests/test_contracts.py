"""
Tests for the supply chain contracts facade

Transactions run against a mocked Web3; event decoding runs against the real
ABIs with hand-built receipt logs.
"""

import unittest
from unittest.mock import MagicMock, Mock, patch
import sys
import os

from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from blockchain.contracts import (
    ContractCallError,
    ContractRevertError,
    DecodedEvent,
    EventNotFoundError,
    SupplyChainContracts,
)

PRIVATE_KEY = "0x" + "01" * 32
ADDRESSES = {
    'nft': "0x" + "aa" * 20,
    'registry': "0x" + "bb" * 20,
    'tracking': "0x" + "cc" * 20,
}
MANUFACTURER = "0x" + "11" * 20


def mock_web3(receipt_status=1):
    w3 = MagicMock()
    w3.eth.chain_id = 31337
    w3.eth.gas_price = 1_000_000_000
    w3.eth.get_transaction_count.return_value = 5
    w3.eth.account.sign_transaction.return_value = Mock(raw_transaction=b"signed")
    w3.eth.send_raw_transaction.return_value = HexBytes("0x" + "ab" * 32)
    w3.eth.wait_for_transaction_receipt.return_value = {'status': receipt_status, 'gasUsed': 84000, 'logs': []}
    return w3


class TestTransactions(unittest.TestCase):
    """Sign, send and wait"""

    def setUp(self):
        self.w3 = mock_web3()
        self.contracts = SupplyChainContracts(private_key=PRIVATE_KEY, addresses=ADDRESSES, w3=self.w3)
        self.registry_fn = self.w3.eth.contract.return_value.functions

    def test_buy_product_builds_signed_transaction(self):
        self.registry_fn.buyProduct.return_value.estimate_gas.return_value = 100000
        self.registry_fn.buyProduct.return_value.build_transaction.return_value = {'nonce': 5}

        result = self.contracts.buy_product(3)

        self.registry_fn.buyProduct.assert_called_with(3)
        tx_params = self.registry_fn.buyProduct.return_value.build_transaction.call_args.args[0]
        self.assertEqual(tx_params['gas'], 120000)
        self.assertEqual(tx_params['chainId'], 31337)
        self.assertEqual(tx_params['nonce'], 5)
        self.assertEqual(tx_params['from'], self.contracts.account_address)
        self.w3.eth.send_raw_transaction.assert_called_once_with(b"signed")
        self.assertEqual(result.tx_hash, "0x" + "ab" * 32)
        self.assertEqual(result.gas_used, 84000)

    def test_revert_surfaces_reason(self):
        self.registry_fn.buyProduct.return_value.estimate_gas.side_effect = ContractLogicError(
            "execution reverted: Product not available"
        )

        with self.assertRaises(ContractRevertError) as ctx:
            self.contracts.buy_product(3)

        self.assertIn("Product not available", ctx.exception.reason)
        self.assertEqual(ctx.exception.function, 'buyProduct')
        self.w3.eth.send_raw_transaction.assert_not_called()

    def test_failed_receipt(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {'status': 0, 'logs': []}
        self.registry_fn.removeProduct.return_value.estimate_gas.return_value = 50000

        with self.assertRaises(ContractCallError) as ctx:
            self.contracts.remove_product(3)
        self.assertEqual(ctx.exception.tx_hash, "0x" + "ab" * 32)

    def test_update_token_uri_uses_ipfs_scheme(self):
        nft_fn = self.registry_fn
        nft_fn.updateTokenURI.return_value.estimate_gas.return_value = 60000

        self.contracts.update_token_uri(3, "QmMeta2")

        nft_fn.updateTokenURI.assert_called_with(3, "ipfs://QmMeta2")

    def test_mint_reads_token_id_from_event(self):
        self.registry_fn.mintProduct.return_value.estimate_gas.return_value = 200000
        with patch.object(self.contracts, 'decode_events', return_value=[
            DecodedEvent(name='ProductMinted', args={'tokenId': 7, 'metadataCID': 'QmMeta'})
        ]):
            minted = self.contracts.mint_product("QmMeta")

        self.assertEqual(minted.token_id, 7)

    def test_mint_without_event(self):
        self.registry_fn.mintProduct.return_value.estimate_gas.return_value = 200000
        with patch.object(self.contracts, 'decode_events', return_value=[]):
            with self.assertRaises(EventNotFoundError):
                self.contracts.mint_product("QmMeta")

    def test_registry_approved_via_operator(self):
        nft_fn = self.registry_fn
        nft_fn.getApproved.return_value.call.return_value = "0x" + "00" * 20
        nft_fn.isApprovedForAll.return_value.call.return_value = True

        self.assertTrue(self.contracts.registry_approved(3, MANUFACTURER))

    def test_registry_approved_directly(self):
        nft_fn = self.registry_fn
        nft_fn.getApproved.return_value.call.return_value = Web3.to_checksum_address(ADDRESSES['registry'])

        self.assertTrue(self.contracts.registry_approved(3, MANUFACTURER))
        nft_fn.isApprovedForAll.assert_not_called()

    def test_tracking_history_rows(self):
        self.registry_fn.getTrackingHistory.return_value.call.return_value = [
            (3, "Manufactured", "Manufacturing Facility", 1700000000),
            (3, "Dispatched", "Distribution Center", 1700000010),
        ]

        history = self.contracts.get_tracking_history(3)

        self.assertEqual([c.step for c in history], ["Manufactured", "Dispatched"])
        self.assertEqual(history[1].timestamp, 1700000010)

    def test_with_signer_shares_connection(self):
        other = self.contracts.with_signer("0x" + "02" * 32)
        self.assertIs(other.w3, self.w3)
        self.assertNotEqual(other.account_address, self.contracts.account_address)

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_configuration(self):
        with self.assertRaises(ValueError) as ctx:
            SupplyChainContracts(addresses={'nft': ADDRESSES['nft']}, w3=self.w3)
        self.assertIn("PRIVATE_KEY", str(ctx.exception))
        self.assertIn("PRODUCT_REGISTRY_ADDRESS", str(ctx.exception))


def product_minted_log(address, token_id, manufacturer, cid):
    topic = Web3.keccak(text="ProductMinted(uint256,address,string)")
    return {
        'address': Web3.to_checksum_address(address),
        'topics': [
            topic,
            HexBytes(token_id.to_bytes(32, 'big')),
            HexBytes(bytes(12) + bytes.fromhex(manufacturer[2:])),
        ],
        'data': HexBytes(encode(['string'], [cid])),
        'logIndex': 0,
        'transactionIndex': 0,
        'transactionHash': HexBytes("0x" + "ab" * 32),
        'blockHash': HexBytes("0x" + "cd" * 32),
        'blockNumber': 1,
    }


class TestEventDecoding(unittest.TestCase):
    """ProductMinted decoding against the shipped ABI"""

    def setUp(self):
        self.contracts = SupplyChainContracts(private_key=PRIVATE_KEY, addresses=ADDRESSES, w3=Web3())

    def test_decode_product_minted(self):
        receipt = {'logs': [product_minted_log(ADDRESSES['nft'], 7, MANUFACTURER, "QmMeta")]}

        events = self.contracts.decode_events(receipt, 'ProductMinted')

        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].args['tokenId'], 7)
        self.assertEqual(events[0].args['metadataCID'], "QmMeta")

    def test_ignores_logs_from_other_contracts(self):
        receipt = {'logs': [product_minted_log("0x" + "ee" * 20, 7, MANUFACTURER, "QmMeta")]}

        self.assertEqual(self.contracts.decode_events(receipt, 'ProductMinted'), [])

    def test_unknown_event(self):
        with self.assertRaises(ValueError):
            self.contracts.decode_events({'logs': []}, 'NoSuchEvent')


if __name__ == '__main__':
    unittest.main()
