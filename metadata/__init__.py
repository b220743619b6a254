"""Product NFT metadata documents"""

from .metadata_builder import (
    CATEGORY_FIELDS,
    DOCUMENTATION_TRAIT,
    ProductForm,
    ProductFormError,
    MetadataError,
    build_metadata,
    build_basic_metadata,
    metadata_bytes,
    find_attribute,
    apply_documentation_update,
    update_metadata,
    summarize_metadata,
)

__all__ = [
    'CATEGORY_FIELDS',
    'DOCUMENTATION_TRAIT',
    'ProductForm',
    'ProductFormError',
    'MetadataError',
    'build_metadata',
    'build_basic_metadata',
    'metadata_bytes',
    'find_attribute',
    'apply_documentation_update',
    'update_metadata',
    'summarize_metadata',
]
