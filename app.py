import logging
import os

import pandas as pd
import streamlit as st

import pycture
from pycture import (
    GenerationRequest, PyctureError, Provider, RateWindow,
    cached_metadata, generate_script, validate_file,
)

# ================== CONFIG ==================
st.set_page_config(page_title="Pycture — Alteryx to Python", page_icon="📊", layout="wide")
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("pycture.app")

DEFAULT_PROXY_URL = os.getenv("PYCTURE_PROXY_URL", "")

EXAMPLES = [
    "Filter sales > $1000, join with customers on ID, group by region",
    "Remove duplicates, fill missing values, export to Excel",
    "Combine all CSVs, sort by date, calculate monthly totals",
]

# ================== SESSION STATE ==================
# RateWindow lives per browser session, never at module level.
if "rate_window" not in st.session_state:
    st.session_state.rate_window = RateWindow()
st.session_state.setdefault("requirement", "")
st.session_state.setdefault("result", None)
st.session_state.setdefault("error", None)
st.session_state.setdefault("metadata_cache", {})


def use_example(text: str):
    st.session_state.requirement = text


def sample_frame(meta) -> pd.DataFrame:
    """Sample rows as a table; ragged rows are padded/truncated to the header width."""
    width = len(meta.columns)
    rows = [(r + [""] * width)[:width] for r in meta.sample]
    columns = meta.columns
    if len(set(columns)) != width or not all(columns):
        columns = [f"{c or 'column'} ({i + 1})" for i, c in enumerate(columns)]
    return pd.DataFrame(rows, columns=columns)


# ================== SIDEBAR ==================
with st.sidebar:
    st.header("⚙️ Settings")
    proxy_url = st.text_input(
        "Proxy URL (optional)", value=DEFAULT_PROXY_URL,
        help="Route requests through a Pycture proxy (e.g. http://localhost:8000/api/generate). "
             "Leave empty to call the provider directly.",
    )
    share_samples = st.checkbox(
        "Share sample rows with the AI", value=False,
        help="Adds up to 3 sample rows per CSV to the prompt. Column names are always shared.",
    )
    st.divider()
    st.caption("Your API key is only used to call the provider's API. It is not stored or logged.")

# ================== MAIN UI ==================
st.title("📊 Pycture")
st.caption("Transform Alteryx workflows into Python code with AI")

st.subheader("🔑 API Key")
provider_label = st.radio("Provider", ["Anthropic Claude", "OpenAI GPT-4"], horizontal=True)
provider = Provider.ANTHROPIC if provider_label.startswith("Anthropic") else Provider.OPENAI
spec = pycture.PROVIDERS[provider]
api_key = st.text_input("API Key", key="api_key", type="password", placeholder=f"{spec.key_prefix}...")
st.caption(f"🔒 Get your API key at {spec.console_url}")

st.subheader("📁 Upload Your Data Files (Optional)")
uploads = st.file_uploader(
    "Supports CSV, Excel (.xlsx, .xls) - Max 100MB per file",
    type=["csv", "xlsx", "xls"], accept_multiple_files=True,
)

file_metadata = []
if uploads:
    try:
        for up in uploads:
            validate_file(up.name, up.size)
        file_metadata = cached_metadata(uploads, st.session_state.metadata_cache)
    except PyctureError as e:
        file_metadata = []
        st.error(e.user_message)

for meta in file_metadata:
    with st.expander(f"📄 {meta.name} ({meta.size_mb} MB)"):
        st.text(f"Columns: {', '.join(meta.columns)}")
        st.text(f"Rows: {meta.row_count_label}")
        if meta.sample:
            st.dataframe(sample_frame(meta), use_container_width=True)

st.subheader("💬 Describe Your Alteryx Workflow")
requirement = st.text_area(
    "Workflow description", key="requirement", height=140, max_chars=pycture.MAX_REQUIREMENT_CHARS,
    placeholder="Example: Load sales.csv, filter for amounts over $1000, join with customers.csv on "
                "customer_id, calculate total revenue by region, and save to Excel...",
)
st.caption(f"{len(requirement)}/{pycture.MAX_REQUIREMENT_CHARS} characters")

st.markdown("💡 Try these examples:")
cols = st.columns(len(EXAMPLES))
for col, example in zip(cols, EXAMPLES):
    col.button(example, on_click=use_example, args=(example,), use_container_width=True)

if st.button("🚀 Generate Python Script", key="generate", type="primary",
             disabled=not requirement.strip() or not api_key.strip()):
    st.session_state.result = None
    st.session_state.error = None
    request = GenerationRequest(
        api_key=api_key, provider=provider, requirement=requirement,
        files=file_metadata, include_samples=share_samples,
    )
    try:
        with st.spinner(f"Generating your Python script with {spec.label}… This may take 10-30 seconds"):
            st.session_state.result = generate_script(
                request, st.session_state.rate_window, proxy_url=proxy_url.strip() or None,
            )
    except PyctureError as e:
        logger.info("Generation rejected: %s", e)
        st.session_state.error = e.user_message

if st.session_state.error:
    st.error(f"❌ {st.session_state.error}")

# ================== RESULTS ==================
result = st.session_state.result
if result is not None:
    st.success("✅ Script generated successfully!")

    st.subheader("📋 Workflow Steps")
    for i, step in enumerate(result.steps, start=1):
        # model output goes through st.text, which never renders markdown or HTML
        st.text(f"{i}. {step.description}")
        if step.code:
            st.code(step.code, language="python")

    st.subheader("🐍 Your Python Script")
    st.code(result.script or "# empty", language="python")
    if result.script:
        st.download_button(
            "⬇️ Download .py", data=pycture.script_download(result),
            file_name=pycture.DOWNLOAD_FILE_NAME, mime="text/plain",
        )

    left, right = st.columns(2)
    with left:
        st.markdown("#### 📥 Input Files Needed")
        st.text("\n".join(f"• {f}" for f in result.input_files) or "None")
    with right:
        st.markdown("#### 📤 Output Files Created")
        st.text("\n".join(f"• {f}" for f in result.output_files) or "None")

    with st.expander("🚀 How to run this code on your computer"):
        st.markdown(
            "1. Install Python from [python.org/downloads](https://www.python.org/downloads/) "
            "(tick **Add Python to PATH** on Windows).\n"
            "2. Create a project folder with `input_files` and `output_files` subfolders.\n"
            f"3. Save `{pycture.DOWNLOAD_FILE_NAME}` in the project folder.\n"
            "4. Install the libraries: `pip install pandas numpy openpyxl`\n"
            "5. Copy the files listed under **Input Files Needed** into `input_files`.\n"
            f"6. Run `python {pycture.DOWNLOAD_FILE_NAME}` and check `output_files`."
        )
