#!/usr/bin/env python3
"""
Supply Chain Contracts - typed facade over ProductNFT, ProductRegistry and Tracking

Every state-changing call is signed with the configured account, sent, and
waited on for one receipt. Nothing here retries: a reverted transaction
surfaces as ContractRevertError carrying the node's message unchanged, and
the caller decides what happens next.

Contracts:
- ProductNFT: ERC-721, one token per product, tokenURI -> metadata CID
- ProductRegistry: marketplace listing, buyProduct transfers to the caller
- Tracking: per-token checkpoint history written during delivery
"""

import os
import sys
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.logs import DISCARD
from eth_account import Account
from dotenv import load_dotenv

# Add parent to path for imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ipfs.pinning import ipfs_uri

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
RECEIPT_TIMEOUT = 60
GAS_BUFFER = 1.2

ABI_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'blockchain_abis')

# Contract key -> (ABI file name, environment variable holding the address)
CONTRACTS = {
    'nft': ('ProductNFT', 'PRODUCT_NFT_ADDRESS'),
    'registry': ('ProductRegistry', 'PRODUCT_REGISTRY_ADDRESS'),
    'tracking': ('Tracking', 'TRACKING_ADDRESS'),
}


class ContractCallError(Exception):
    """A contract call or transaction failed."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class ContractRevertError(ContractCallError):
    """The contract rejected the call; ``reason`` is the node's revert text."""

    def __init__(self, reason: str, function: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.function = function


class EventNotFoundError(ContractCallError):
    """An expected event is missing from a transaction receipt."""


@dataclass
class TransactionResult:
    tx_hash: str
    receipt: Any
    gas_used: int = 0


@dataclass
class MintResult:
    token_id: int
    transaction: TransactionResult


@dataclass
class RegistryListing:
    token_id: int
    manufacturer: str
    available: bool
    listed_at: int


@dataclass
class CheckpointRecord:
    token_id: int
    step: str
    location: str
    timestamp: int


@dataclass
class DecodedEvent:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    address: Optional[str] = None


def load_abi(name: str) -> list:
    """Load a contract ABI from blockchain_abis/<name>.json."""
    abi_path = os.path.join(ABI_DIR, f'{name}.json')
    try:
        with open(abi_path, 'r') as f:
            contract_data = json.load(f)
    except FileNotFoundError:
        raise FileNotFoundError(
            f"{name} ABI not found at {abi_path}. "
            "Run: npx hardhat compile && python blockchain/extract_abis.py"
        )
    # Handle both array ABI and {abi: [...]} artifact format
    return contract_data if isinstance(contract_data, list) else contract_data.get('abi', contract_data)


def _revert_reason(error: ContractLogicError) -> str:
    message = getattr(error, 'message', None) or str(error)
    return message or "execution reverted"


def _hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    if hasattr(value, 'hex'):
        text = value.hex()
        return text if text.startswith('0x') else '0x' + text
    return str(value)


class SupplyChainContracts:
    """Signs and sends supply chain transactions, decodes their events"""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        private_key: Optional[str] = None,
        addresses: Optional[Dict[str, str]] = None,
        w3: Optional[Web3] = None
    ):
        """
        Initialize Web3 connection and the three contracts.

        Args:
            rpc_url: JSON-RPC endpoint (RPC_URL, default local node)
            private_key: Signing key (PRIVATE_KEY)
            addresses: {'nft': ..., 'registry': ..., 'tracking': ...};
                missing entries are read from the environment
            w3: Pre-built Web3 instance (skips the connection check)
        """
        self.rpc_url = rpc_url or os.getenv('RPC_URL', DEFAULT_RPC_URL)
        self.private_key = private_key or os.getenv('PRIVATE_KEY')

        addresses = dict(addresses or {})
        for key, (_, env_var) in CONTRACTS.items():
            addresses.setdefault(key, os.getenv(env_var))

        missing = [env_var for key, (_, env_var) in CONTRACTS.items() if not addresses.get(key)]
        if not self.private_key:
            missing.insert(0, 'PRIVATE_KEY')
        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(self.rpc_url))
            if not w3.is_connected():
                raise ConnectionError(f"Failed to connect to {self.rpc_url}")
        self.w3 = w3

        self.account = Account.from_key(self.private_key)
        self.addresses = {key: Web3.to_checksum_address(value) for key, value in addresses.items()}

        self.nft = self.w3.eth.contract(address=self.addresses['nft'], abi=load_abi('ProductNFT'))
        self.registry = self.w3.eth.contract(address=self.addresses['registry'], abi=load_abi('ProductRegistry'))
        self.tracking = self.w3.eth.contract(address=self.addresses['tracking'], abi=load_abi('Tracking'))

        # One in-flight transaction per signer keeps nonces sequential
        self._tx_lock = threading.Lock()

        logger.info(f"SupplyChainContracts initialized for {self.account.address} (NFT {self.addresses['nft']})")

    def with_signer(self, private_key: str) -> "SupplyChainContracts":
        """Same contracts and connection, different signing account."""
        return SupplyChainContracts(
            rpc_url=self.rpc_url,
            private_key=private_key,
            addresses=self.addresses,
            w3=self.w3
        )

    @property
    def account_address(self) -> str:
        return self.account.address

    @property
    def registry_address(self) -> str:
        return self.addresses['registry']

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _transact(self, contract_fn, label: str) -> TransactionResult:
        """Estimate, sign, send and wait for one receipt."""
        started = time.perf_counter()
        with self._tx_lock:
            try:
                gas = contract_fn.estimate_gas({'from': self.account.address})
                nonce = self.w3.eth.get_transaction_count(self.account.address, 'pending')
                tx = contract_fn.build_transaction({
                    'from': self.account.address,
                    'chainId': self.w3.eth.chain_id,
                    'gas': int(gas * GAS_BUFFER),
                    'gasPrice': self.w3.eth.gas_price,
                    'nonce': nonce,
                })
            except ContractLogicError as e:
                reason = _revert_reason(e)
                logger.warning(f"{label} reverted: {reason}")
                raise ContractRevertError(reason, label) from e

            signed_tx = self.w3.eth.account.sign_transaction(tx, self.private_key)
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
            tx_hex = _hex(tx_hash)
            logger.debug(f"{label} sent: {tx_hex}")

            try:
                receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT)
            except ContractLogicError as e:
                raise ContractRevertError(_revert_reason(e), label) from e

        if receipt['status'] != 1:
            raise ContractCallError(f"{label} transaction failed (status 0)", tx_hash=tx_hex)

        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"[PERF] {label}: {elapsed:.2f} ms (tx {tx_hex})")
        return TransactionResult(tx_hash=tx_hex, receipt=receipt, gas_used=receipt.get('gasUsed', 0))

    def _call(self, contract_fn, label: str):
        try:
            return contract_fn.call()
        except ContractLogicError as e:
            raise ContractRevertError(_revert_reason(e), label) from e

    def mint_product(self, metadata_cid: str) -> MintResult:
        """
        Mint a product NFT whose tokenURI points at ``metadata_cid``.

        The token id is read from the ProductMinted event emitted by the NFT
        contract, never from a return value or a follow-up query.

        Raises:
            ContractRevertError: If the mint is rejected
            EventNotFoundError: If the receipt has no ProductMinted log
        """
        if not metadata_cid:
            raise ValueError("Metadata CID is required")

        result = self._transact(self.nft.functions.mintProduct(metadata_cid), 'mintProduct')
        events = self.decode_events(result.receipt, 'ProductMinted')
        if not events:
            raise EventNotFoundError("ProductMinted event not found in receipt", tx_hash=result.tx_hash)

        token_id = int(events[0].args['tokenId'])
        logger.info(f"Minted token {token_id} with metadata {metadata_cid}")
        return MintResult(token_id=token_id, transaction=result)

    def set_approval_for_all(self, operator: Optional[str] = None, approved: bool = True) -> TransactionResult:
        operator = Web3.to_checksum_address(operator or self.registry_address)
        return self._transact(self.nft.functions.setApprovalForAll(operator, approved), 'setApprovalForAll')

    def register_product(self, token_id: int) -> TransactionResult:
        return self._transact(self.registry.functions.registerProduct(token_id), 'registerProduct')

    def remove_product(self, token_id: int) -> TransactionResult:
        return self._transact(self.registry.functions.removeProduct(token_id), 'removeProduct')

    def buy_product(self, token_id: int) -> TransactionResult:
        """Buy a listed product; the registry transfers the NFT to the signer."""
        return self._transact(self.registry.functions.buyProduct(token_id), 'buyProduct')

    def update_token_uri(self, token_id: int, metadata_cid: str) -> TransactionResult:
        """Point the token at a new metadata document (``ipfs://<cid>``)."""
        return self._transact(
            self.nft.functions.updateTokenURI(token_id, ipfs_uri(metadata_cid)),
            'updateTokenURI'
        )

    def start_tracking(self, token_id: int, customer: str) -> TransactionResult:
        return self._transact(
            self.tracking.functions.startTracking(token_id, Web3.to_checksum_address(customer)),
            'startTracking'
        )

    def add_checkpoint(self, token_id: int, step: str, location: str) -> TransactionResult:
        return self._transact(
            self.tracking.functions.addCheckpoint(token_id, step, location),
            'addCheckpoint'
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_available_products(self) -> List[int]:
        return [int(t) for t in self._call(self.registry.functions.getAvailableProducts(), 'getAvailableProducts')]

    def get_products_by_owner(self, owner: str) -> List[int]:
        fn = self.registry.functions.getProductsByOwner(Web3.to_checksum_address(owner))
        return [int(t) for t in self._call(fn, 'getProductsByOwner')]

    def get_product(self, token_id: int) -> RegistryListing:
        data = self._call(self.registry.functions.getProduct(token_id), 'getProduct')
        return RegistryListing(
            token_id=int(data[0]),
            manufacturer=data[1],
            available=bool(data[2]),
            listed_at=int(data[3])
        )

    def owner_of(self, token_id: int) -> str:
        return self._call(self.nft.functions.ownerOf(token_id), 'ownerOf')

    def token_uri(self, token_id: int) -> str:
        return self._call(self.nft.functions.tokenURI(token_id), 'tokenURI')

    def get_manufacturer(self, token_id: int) -> str:
        return self._call(self.nft.functions.getManufacturer(token_id), 'getManufacturer')

    def get_approved(self, token_id: int) -> str:
        return self._call(self.nft.functions.getApproved(token_id), 'getApproved')

    def is_approved_for_all(self, owner: str, operator: Optional[str] = None) -> bool:
        fn = self.nft.functions.isApprovedForAll(
            Web3.to_checksum_address(owner),
            Web3.to_checksum_address(operator or self.registry_address)
        )
        return bool(self._call(fn, 'isApprovedForAll'))

    def registry_approved(self, token_id: int, owner: Optional[str] = None) -> bool:
        """True if the registry may transfer ``token_id`` (direct or operator approval)."""
        registry = self.registry_address.lower()
        approved = self.get_approved(token_id)
        if approved and approved.lower() == registry:
            return True
        owner = owner or self.owner_of(token_id)
        return self.is_approved_for_all(owner, self.registry_address)

    def get_tracking_history(self, token_id: int) -> List[CheckpointRecord]:
        rows = self._call(self.tracking.functions.getTrackingHistory(token_id), 'getTrackingHistory')
        return [self._checkpoint(row) for row in rows]

    def get_latest_checkpoint(self, token_id: int) -> CheckpointRecord:
        return self._checkpoint(self._call(self.tracking.functions.getLatestCheckpoint(token_id), 'getLatestCheckpoint'))

    def is_product_tracking(self, token_id: int) -> bool:
        return bool(self._call(self.tracking.functions.isProductTracking(token_id), 'isProductTracking'))

    @staticmethod
    def _checkpoint(row) -> CheckpointRecord:
        return CheckpointRecord(token_id=int(row[0]), step=row[1], location=row[2], timestamp=int(row[3]))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _event_source(self, event_name: str):
        for contract in (self.nft, self.registry, self.tracking):
            if any(item.get('type') == 'event' and item.get('name') == event_name for item in contract.abi):
                return contract
        raise ValueError(f"Unknown event: {event_name}")

    def decode_events(self, receipt, event_name: str) -> List[DecodedEvent]:
        """
        Decode ``event_name`` logs from a receipt.

        Only logs emitted by the contract that declares the event are
        considered, so a same-signature event from another address is ignored.
        """
        contract = self._event_source(event_name)
        address = contract.address.lower()
        logs = [log for log in receipt.get('logs', []) if str(log.get('address', '')).lower() == address]
        if not logs:
            return []

        processed = getattr(contract.events, event_name)().process_receipt({'logs': logs}, errors=DISCARD)
        return [
            DecodedEvent(name=event_name, args=dict(entry['args']), address=entry.get('address'))
            for entry in processed
        ]


# Global instance (singleton pattern)
_contracts = None


def get_contracts() -> SupplyChainContracts:
    """Get singleton contracts instance (server signer)"""
    global _contracts
    if _contracts is None:
        _contracts = SupplyChainContracts()
    return _contracts


# CLI testing
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Inspect supply chain contracts')
    parser.add_argument('--token-id', type=int, help='Token to inspect')
    parser.add_argument('--available', action='store_true', help='List available products')
    args = parser.parse_args()

    contracts = get_contracts()
    print(f"✓ Connected as {contracts.account_address}")

    if args.available:
        print(f"  Available: {contracts.get_available_products()}")

    if args.token_id is not None:
        listing = contracts.get_product(args.token_id)
        print(f"  Owner: {contracts.owner_of(args.token_id)}")
        print(f"  Token URI: {contracts.token_uri(args.token_id)}")
        print(f"  Listed by {listing.manufacturer}, available={listing.available}")
        for checkpoint in contracts.get_tracking_history(args.token_id):
            print(f"  - {checkpoint.step} @ {checkpoint.location}")
