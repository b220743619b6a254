"""Product NFT, registry and tracking contracts"""

from .contracts import (
    SupplyChainContracts,
    ContractCallError,
    ContractRevertError,
    EventNotFoundError,
    TransactionResult,
    MintResult,
    RegistryListing,
    CheckpointRecord,
    DecodedEvent,
    get_contracts,
    load_abi,
)

__all__ = [
    'SupplyChainContracts',
    'ContractCallError',
    'ContractRevertError',
    'EventNotFoundError',
    'TransactionResult',
    'MintResult',
    'RegistryListing',
    'CheckpointRecord',
    'DecodedEvent',
    'get_contracts',
    'load_abi',
]
