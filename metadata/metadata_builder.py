"""
Product Metadata Builder

Builds the ERC-721 metadata document pinned for every product NFT and derives
updated versions of it when the product's certificate changes.

A pinned document is never modified. An update produces a new document that
points back at its predecessor through ``previousVersion``; the token's
``tokenURI`` on chain is the only "current" pointer.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ipfs.pinning import PinningError, PinStatus, extract_cid, ipfs_uri

logger = logging.getLogger(__name__)

DOCUMENTATION_TRAIT = "Documentation"
LOCATION_TRAIT = "Manufacturing Location"
MANUFACTURER_TRAIT = "Manufacturer Address"
CATEGORY_TRAIT = "Product Category"
CREATED_TRAIT = "Created Date"

# Category-specific form fields: (field name, display label)
CATEGORY_FIELDS: Dict[str, List[tuple]] = {
    "Seeds": [
        ("cropType", "Crop Type"),
        ("batchNo", "Batch Number"),
        ("expiryDate", "Expiry Date"),
    ],
    "Fertilizer": [
        ("chemicalComposition", "Chemical Composition"),
        ("npkRatio", "NPK Ratio"),
        ("manufactureDate", "Manufacture Date"),
    ],
    "Pesticide": [
        ("activeIngredient", "Active Ingredient"),
        ("concentration", "Concentration (%)"),
        ("safetyPeriod", "Safety Period (Days)"),
    ],
    "Tractor": [
        ("modelNo", "Model Number"),
        ("power", "Power (HP)"),
        ("serialNo", "Serial Number"),
    ],
    "Tools": [
        ("toolType", "Tool Type"),
        ("warrantyPeriod", "Warranty Period"),
    ],
}


class ProductFormError(ValueError):
    """Manufacturer form is incomplete or inconsistent."""


class MetadataError(ValueError):
    """Metadata document is malformed."""


@dataclass
class ProductForm:
    """Manufacturer input for a new product."""
    title: str
    location: str
    category: str
    extra_fields: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """
        Raises:
            ProductFormError: listing every problem found
        """
        errors = []
        if not (self.title or "").strip():
            errors.append("Title is required")
        if not (self.location or "").strip():
            errors.append("Manufacturing location is required")
        if not self.category:
            errors.append("Please select a product category")
        elif self.category not in CATEGORY_FIELDS:
            errors.append(f"Unknown product category: {self.category}")
        else:
            expected = [name for name, _ in CATEGORY_FIELDS[self.category]]
            for name, label in CATEGORY_FIELDS[self.category]:
                if not str(self.extra_fields.get(name, "")).strip():
                    errors.append(f"{label} is required for {self.category}")
            unknown = sorted(set(self.extra_fields) - set(expected))
            if unknown:
                errors.append(f"Unexpected fields for {self.category}: {', '.join(unknown)}")

        if errors:
            raise ProductFormError("; ".join(errors))

    def ordered_extra_fields(self) -> List[tuple]:
        """Category fields in schema order."""
        schema = CATEGORY_FIELDS.get(self.category, [])
        ordered = [(name, self.extra_fields[name]) for name, _ in schema if name in self.extra_fields]
        known = {name for name, _ in schema}
        ordered.extend((k, v) for k, v in self.extra_fields.items() if k not in known)
        return ordered

    def certificate_fields(self) -> Dict[str, str]:
        """Fields written onto the first certificate page."""
        fields = {"category": self.category}
        fields.update(dict(self.ordered_extra_fields()))
        return fields


def _timestamp(value: Optional[datetime]) -> str:
    value = value or datetime.now(timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def build_metadata(
    form: ProductForm,
    image_cid: str,
    manufacturer: str,
    doc_cid: Optional[str] = None,
    created_at: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Build the NFT metadata document for a new product.

    Deterministic for a fixed ``created_at``. Attribute order is fixed:
    location, manufacturer, category, category fields, created date and,
    when a certificate was pinned, documentation.

    Args:
        form: Validated manufacturer form
        image_cid: CID of the pinned product image
        manufacturer: Manufacturer wallet address
        doc_cid: CID of the pinned certificate PDF, if any
        created_at: Creation time (defaults to now)

    Returns:
        Metadata document dict
    """
    attributes = [
        {"trait_type": LOCATION_TRAIT, "value": form.location},
        {"trait_type": MANUFACTURER_TRAIT, "value": manufacturer},
        {"trait_type": CATEGORY_TRAIT, "value": form.category},
    ]
    attributes.extend(
        {"trait_type": name, "value": value}
        for name, value in form.ordered_extra_fields()
    )
    attributes.append({"trait_type": CREATED_TRAIT, "value": _timestamp(created_at)})
    if doc_cid:
        attributes.append({"trait_type": DOCUMENTATION_TRAIT, "value": ipfs_uri(doc_cid)})

    return {
        "name": form.title,
        "description": f"Manufactured in {form.location}",
        "image": ipfs_uri(image_cid),
        "attributes": attributes,
    }


def build_basic_metadata(title: str, location: str, image_cid: str, created_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Metadata for a product created without a category form."""
    if not (title or "").strip() or not (location or "").strip() or not image_cid:
        raise ProductFormError("title, location and imageCID are required")
    return {
        "name": title,
        "description": f"Manufactured in {location}",
        "image": ipfs_uri(image_cid),
        "attributes": [
            {"trait_type": LOCATION_TRAIT, "value": location},
            {"trait_type": CREATED_TRAIT, "value": _timestamp(created_at)},
        ],
    }


def metadata_bytes(document: Dict[str, Any]) -> bytes:
    """Compact JSON encoding used for pinning."""
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def find_attribute(document: Dict[str, Any], trait_type: str) -> Optional[Any]:
    """Value of the first attribute with ``trait_type``, or None."""
    for attribute in document.get("attributes") or []:
        if isinstance(attribute, dict) and attribute.get("trait_type") == trait_type:
            return attribute.get("value")
    return None


def _check_document(document: Any) -> None:
    if not isinstance(document, dict):
        raise MetadataError("Metadata document must be a JSON object")
    if not isinstance(document.get("attributes"), list):
        raise MetadataError("Metadata document has no attribute list")


def apply_documentation_update(
    document: Dict[str, Any],
    new_doc_cid: str,
    updated_at: Optional[datetime] = None,
    previous_cid: Optional[str] = None
) -> Dict[str, Any]:
    """
    Derive the next version of a metadata document.

    Only the ``Documentation`` attribute value changes; every other attribute
    is kept in place and the attribute count is unchanged. ``updatedAt`` is
    set (or overwritten) and ``previousVersion`` points at the document this
    one supersedes, when its CID is known. The input is not modified.
    """
    _check_document(document)
    updated = copy.deepcopy(document)
    updated["attributes"] = [
        {**attribute, "value": ipfs_uri(new_doc_cid)}
        if isinstance(attribute, dict) and attribute.get("trait_type") == DOCUMENTATION_TRAIT
        else attribute
        for attribute in updated["attributes"]
    ]
    updated["updatedAt"] = _timestamp(updated_at)
    if previous_cid:
        updated["previousVersion"] = ipfs_uri(previous_cid)
    return updated


def update_metadata(
    existing_metadata_url: str,
    new_doc_cid: str,
    fetcher,
    updated_at: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Fetch the current metadata document and point it at a new certificate.

    Args:
        existing_metadata_url: Gateway URL or ipfs:// URI of the current document
        new_doc_cid: CID of the newly pinned certificate
        fetcher: Object with ``fetch_json(reference) -> FetchResult``
        updated_at: Update time (defaults to now)

    Returns:
        New metadata document, ready to pin

    Raises:
        PinningError: If the fetch fails (non-2xx or unreachable)
        MetadataError: If the fetched document is malformed
    """
    result = fetcher.fetch_json(existing_metadata_url)
    if not result.ok:
        raise PinningError(
            f"Failed to fetch metadata: {result.error}",
            transient=result.status == PinStatus.TRANSIENT_FAILURE
        )

    try:
        previous_cid = extract_cid(existing_metadata_url)
    except ValueError:
        previous_cid = None

    document = apply_documentation_update(result.data, new_doc_cid, updated_at, previous_cid)
    logger.info(f"Metadata {previous_cid} updated to reference certificate {new_doc_cid}")
    return document


def summarize_metadata(document: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten the fields the dashboards display."""
    return {
        "name": document.get("name"),
        "description": document.get("description"),
        "image": document.get("image"),
        "location": find_attribute(document, LOCATION_TRAIT) or "Unknown",
        "category": find_attribute(document, CATEGORY_TRAIT) or "N/A",
        "manufacturer": find_attribute(document, MANUFACTURER_TRAIT),
        "documentation": find_attribute(document, DOCUMENTATION_TRAIT),
    }
