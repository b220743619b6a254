"""IPFS Pinning Package"""

from .pinning import (
    PinataClient,
    PinResult,
    FetchResult,
    PinStatus,
    PinningError,
    get_pinning_client,
    gateway_url,
    extract_cid,
    ipfs_uri,
)

__all__ = [
    'PinataClient',
    'PinResult',
    'FetchResult',
    'PinStatus',
    'PinningError',
    'get_pinning_client',
    'gateway_url',
    'extract_cid',
    'ipfs_uri',
]
