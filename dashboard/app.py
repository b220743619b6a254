"""
Supply Chain Product Dashboard

Streamlit dashboard with a manufacturer view (create, list and remove
products) and a customer view (marketplace, purchases, certificates and
delivery tracking). Signing keys come from the environment, one per role.
"""

import asyncio
import base64
import json
import sys
from pathlib import Path

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
import streamlit as st

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from blockchain.contracts import ContractCallError, ContractRevertError
from certificate.qrcode_gen import generate_certificate_qr
from ipfs.pinning import PinningError
from journey.simulator import JourneySimulator, JourneyStatus
from marketplace.catalog import ProductCatalog, ProductImage, ProductOwnershipError
from marketplace.purchase import (
    DocumentationPendingError,
    PurchaseOrchestrator,
    PurchaseValidationError,
    RegistryNotApprovedError,
)
from metadata.metadata_builder import CATEGORY_FIELDS, ProductForm, ProductFormError
from service.dependencies import contracts_for_role, get_pinning, get_session_factory, get_store

# Page configuration
st.set_page_config(
    page_title="Supply Chain Dashboard",
    page_icon="📦",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.title("Supply Chain Dashboard")
st.markdown("**Product NFTs with verifiable certificates and tracked delivery**")
st.markdown("---")

# Sidebar
st.sidebar.header("Role")
role = st.sidebar.radio("I am a", ["Manufacturer", "Customer"])


@st.cache_resource
def load_services(role_name: str):
    """Catalog and orchestrator signing with the role's key"""
    contracts = contracts_for_role(role_name)
    pinning = get_pinning()
    store = get_store()
    session_factory = get_session_factory()
    catalog = ProductCatalog(contracts, pinning, store, session_factory)
    orchestrator = PurchaseOrchestrator(contracts, pinning, store, session_factory)
    return contracts, catalog, orchestrator


try:
    contracts, catalog, orchestrator = load_services(role.lower())
except (ValueError, ConnectionError, FileNotFoundError) as e:
    st.error(f"❌ Contracts not initialized: {e}")
    st.stop()

account = contracts.account_address
st.sidebar.write("**Account:**", f"{account[:6]}...{account[-4:]}")


def products_frame(products) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "Token ID": p.token_id,
            "Name": p.name,
            "Category": p.category,
            "Location": p.location,
            "Available": p.available,
            "Documentation": p.documentation_status,
        }
        for p in products
    ])


def show_certificate(product):
    if not product.certificate_url:
        st.write("No certificate")
        return
    st.markdown(f"[📄 View certificate]({product.certificate_url})")
    qr_base64, _ = generate_certificate_qr(product.certificate_url, size=4)
    st.image(base64.b64decode(qr_base64), width=120)


def simulate_journey(token_id: int, delivery_location: str):
    """Progress-only journey shown while the customer waits."""
    bar = st.progress(10, text="Purchase Confirmed — Processing")
    store = get_store()
    store.start_tracking(token_id, delivery_location)

    def show(update):
        store.update_tracking(token_id, update.step, update.location, update.progress)
        bar.progress(update.progress, text=f"{update.step} — {update.location}")

    simulator = JourneySimulator(on_update=show)
    outcome = asyncio.run(simulator.run(token_id, delivery_location))
    if outcome.status == JourneyStatus.COMPLETED:
        st.success(f"✅ Delivered to {delivery_location}")


def manufacturer_view():
    st.header("Create Product")

    category = st.selectbox("Product Category", [""] + list(CATEGORY_FIELDS))
    with st.form("create_product"):
        title = st.text_input("Product Title")
        location = st.text_input("Manufacturing Location")
        extra = {}
        for name, label in CATEGORY_FIELDS.get(category, []):
            extra[name] = st.text_input(label, key=f"field_{name}")
        image = st.file_uploader("Product Image", type=["png", "jpg", "jpeg", "gif", "webp"])
        base_pdf = st.file_uploader("Product Documentation (PDF)", type=["pdf"])
        submitted = st.form_submit_button("Create Product")

    if submitted:
        if image is None:
            st.error("Please upload a product image")
        else:
            try:
                with st.spinner("Uploading to IPFS and minting..."):
                    created = catalog.create_product(
                        ProductForm(title, location, category, extra),
                        ProductImage(image.getvalue(), image.name, image.type),
                        account,
                        base_pdf.getvalue() if base_pdf else None,
                    )
                st.success(f"✅ Product created! Token ID: {created.token_id}")
                with st.expander("Metadata"):
                    st.json(created.metadata)
            except (ProductFormError, ProductOwnershipError) as e:
                st.error(f"❌ {e}")
            except (PinningError, ContractCallError) as e:
                st.error(f"❌ Failed to create product: {e}")

    st.markdown("---")
    st.header("My Products")

    try:
        products = catalog.load_manufacturer_products(account)
    except ContractCallError as e:
        st.error(f"Failed to load products: {e}")
        return

    if not products:
        st.info("No products yet. Create your first product above.")
        return

    st.dataframe(products_frame(products), use_container_width=True, hide_index=True)

    for product in products:
        with st.expander(f"#{product.token_id} {product.name}"):
            col1, col2 = st.columns(2)
            with col1:
                if product.image_url:
                    st.image(product.image_url, width=200)
                st.write("**Description:**", product.description)
                st.write("**Status:**", "Available" if product.available else "Not listed")
            with col2:
                show_certificate(product)
                if product.available and st.button("Remove", key=f"remove_{product.token_id}"):
                    try:
                        catalog.remove_product(product.token_id, account)
                        st.success("Product removed successfully!")
                    except (ProductOwnershipError, ContractRevertError) as e:
                        st.error(f"❌ {e}")

    by_category = products_frame(products).groupby("Category").size().reset_index(name="Products")
    fig = px.bar(by_category, x="Category", y="Products", title="Products by Category")
    st.plotly_chart(fig, use_container_width=True)


def customer_view():
    try:
        loaded = catalog.load_customer_products(account)
    except ContractCallError as e:
        st.error(f"Failed to load products: {e}")
        return

    tab_market, tab_owned, tab_pending = st.tabs(["Marketplace", "My Products", "Pending Documentation"])

    with tab_market:
        delivery_location = st.text_input("Delivery Location")
        if not loaded["available"]:
            st.info("No products available right now.")
        for product in loaded["available"]:
            with st.expander(f"#{product.token_id} {product.name} ({product.category})"):
                if product.image_url:
                    st.image(product.image_url, width=200)
                st.write("**Made in:**", product.location)
                show_certificate(product)
                if st.button("Buy", key=f"buy_{product.token_id}"):
                    try:
                        with st.spinner("Buying and updating certificate..."):
                            outcome = orchestrator.purchase(product.token_id, delivery_location, account)
                        st.success("✅ Purchase complete! Certificate updated & metadata synced on blockchain.")
                        st.markdown(f"[📄 Updated certificate]({outcome.certificate_url})")
                        simulate_journey(product.token_id, delivery_location.strip())
                    except (PurchaseValidationError, RegistryNotApprovedError) as e:
                        st.error(f"❌ {e}")
                    except DocumentationPendingError as e:
                        st.warning(f"⚠️ You own the product, but its documents are pending: {e.cause}")
                    except (PinningError, ContractCallError) as e:
                        st.error(f"Purchase failed: {e}")

    with tab_owned:
        if not loaded["owned"]:
            st.info("No products purchased yet.")
        for product in loaded["owned"]:
            with st.expander(f"#{product.token_id} {product.name}"):
                show_certificate(product)
                state = get_store().tracking(product.token_id)
                if state:
                    st.progress(state.progress, text=f"{state.step} — {state.location}")
                history = catalog.tracking_history(product.token_id)
                if history:
                    steps = [c.step for c in history]
                    fig = go.Figure(data=[go.Scatter(
                        x=[pd.to_datetime(c.timestamp, unit="s") for c in history],
                        y=steps,
                        mode="lines+markers",
                        text=[c.location for c in history],
                    )])
                    fig.update_layout(title="Delivery Checkpoints", yaxis={"categoryorder": "array", "categoryarray": steps})
                    st.plotly_chart(fig, use_container_width=True)

    with tab_pending:
        pending = orchestrator.pending_documentation()
        if not pending:
            st.success("All purchases are documented.")
        for record in pending:
            st.write(f"Token {record['tokenId']}: failed at **{record['failedStep']}**: {record['error']}")
            if st.button("Retry documentation", key=f"resume_{record['id']}"):
                try:
                    outcome = orchestrator.resume_documentation(record["tokenId"])
                    st.success(f"✅ Documentation updated: {outcome.certificate_url}")
                except DocumentationPendingError as e:
                    st.error(f"Still pending: {e.cause}")
        with st.expander("Raw records"):
            st.code(json.dumps(pending, indent=2, default=str))


if role == "Manufacturer":
    manufacturer_view()
else:
    customer_view()
