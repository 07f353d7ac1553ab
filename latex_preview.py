"""
LaTeX Live Preview with Streamlit UI

Edit a LaTeX document and see it rendered on every change. Images imported
in the sidebar are resolved by \\includegraphics{<filename>}.

Features:
- Live preview of a LaTeX subset (sections, styling, math, lists, figures, tables)
- Image assets kept per session as data URIs
- Light, dark and academic preview themes
- Downloads: .tex source, standalone .html, .pdf (via pandoc)
- Optional latex_preview.toml for defaults (path overridable with LATEX_PREVIEW_CONFIG)
"""
import os
import datetime
import streamlit as st
from typing import Dict, List, Optional, Set, Tuple
try:
    import tomli as toml  # Python < 3.11
except ImportError:
    try:
        import tomllib as toml  # Python >= 3.11
    except ImportError:
        toml = None

from latex_converter import (
    THEMES,
    asset_from_upload,
    build_preview_document,
    check_pdf_dependencies,
    convert_html_to_pdf,
    sanitize_filename_for_format,
)
from latex_renderer import (
    ERROR_FRAGMENT,
    Asset,
    RenderOptions,
    extract_metadata,
    render_latex,
    strip_comments,
    unescape_specials,
)

# ---------- App config ----------
APP_TITLE = "LaTeX Live Preview"
APP_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_FILE = os.environ.get("LATEX_PREVIEW_CONFIG", os.path.join(APP_DIR, "latex_preview.toml"))
IMAGE_TYPES = ["png", "jpg", "jpeg", "gif", "svg", "webp"]

DEFAULT_CONFIG = {
    "preview": {
        "theme": "light",
        "escape_html": True,
        "base_font_size": "100%",
        "content_width": "800px",
        "height": 720,
    },
    "export": {
        "pdf_engine": "",
    },
}

STARTER_DOCUMENT = r"""\documentclass[10pt, a4paper]{article}
\usepackage[utf8]{inputenc}
\usepackage{amsmath}
\usepackage{booktabs}
\usepackage{graphicx}

\title{New Project}
\author{AUTHOR}
\date{\today}

\begin{document}
\maketitle

\section{Introduction}
This preview renders a subset of \textbf{LaTeX} as you type, including inline math such as $E = mc^2$.

\section{Assets (Images)}
Import an image in the sidebar, then reference it by file name:
\begin{figure}[h!]
  \centering
  \includegraphics[width=0.8\textwidth]{my_chart.png}
  \caption{Example asset.}
\end{figure}

\section{Conclusion}
Thank you for using the \textit{LaTeX Live Preview}.

\end{document}
"""

# ---------- Helpers ----------
def load_app_config(path: Optional[str]) -> Dict:
    """Load latex_preview.toml over DEFAULT_CONFIG; unknown keys are ignored."""
    config = {section: dict(values) for section, values in DEFAULT_CONFIG.items()}
    if not path or not os.path.exists(path):
        return config

    if toml is None:
        st.warning("TOML parser not available. Install 'tomli' for Python < 3.11 or use Python >= 3.11")
        return config

    try:
        with open(path, "rb") as f:
            loaded = toml.load(f)
    except (OSError, ValueError) as e:
        st.warning(f"Failed to parse {os.path.basename(path)}: {e}. Using defaults.")
        return config

    for section, values in loaded.items():
        if section in config and isinstance(values, dict):
            for key, value in values.items():
                if key in config[section]:
                    config[section][key] = value

    if config["preview"]["theme"] not in THEMES:
        st.warning(f"Unknown theme '{config['preview']['theme']}'. Using 'light'.")
        config["preview"]["theme"] = "light"
    return config

def format_today(today: Optional[datetime.date] = None) -> str:
    """Format a date the way LaTeX prints \\today, e.g. 'October 19, 2026'."""
    today = today or datetime.date.today()
    return f"{today.strftime('%B')} {today.day}, {today.year}"

def starter_document(author: str = "Author") -> str:
    """Starter source for an empty editor."""
    return STARTER_DOCUMENT.replace("AUTHOR", author or "Author")

def sync_uploaded_assets(uploaded_files, assets: Dict[str, Asset], removed: Set[str]) -> Tuple[List[str], List[str]]:
    """
    Import newly uploaded images into assets.

    A name the user removed stays removed while the uploader still lists the
    file; once the file leaves the uploader it can be imported again.

    Returns:
        Tuple of (imported names, error messages)
    """
    uploaded_files = uploaded_files or []
    removed.intersection_update(f.name for f in uploaded_files)

    imported, errors = [], []
    for uploaded in uploaded_files:
        if uploaded.name in assets or uploaded.name in removed:
            continue
        try:
            asset = asset_from_upload(uploaded.name, uploaded.getvalue(), uploaded.type)
        except ValueError as e:
            errors.append(str(e))
            continue
        assets[asset.name] = asset
        imported.append(asset.name)
    return imported, errors

def remove_asset(name: str, assets: Dict[str, Asset], removed: Set[str]) -> None:
    assets.pop(name, None)
    removed.add(name)

def document_title(source: str) -> str:
    """Title for the page and download names; commented-out \\title lines are ignored."""
    title = extract_metadata(strip_comments(source or "")).get("title")
    if not title:
        return "Document"
    return unescape_specials(title, escape=False)

@st.cache_data(show_spinner=False)
def render_preview(source: str, assets: tuple, escape_enabled: bool, today: str) -> str:
    """Cached render_latex(); the renderer is pure so identical inputs share a result."""
    return render_latex(source, assets, RenderOptions(escape_html=escape_enabled, today=today))

# ---------- Streamlit UI ----------
st.set_page_config(page_title=APP_TITLE, layout="wide")
st.title(APP_TITLE)
st.caption("Write LaTeX on the left, see it rendered on the right. Supports sections, bold/italic, math, lists, tables and figures with imported images.")

config = load_app_config(CONFIG_FILE)
preview_config = config["preview"]

if "assets" not in st.session_state:
    st.session_state["assets"] = {}
if "removed_assets" not in st.session_state:
    st.session_state["removed_assets"] = set()

theme_options = ["Light", "Dark", "Academic"]
theme_map = {"Light": "light", "Dark": "dark", "Academic": "academic"}

with st.sidebar:
    st.subheader("Assets")
    uploaded_images = st.file_uploader(
        "Import images",
        type=IMAGE_TYPES,
        accept_multiple_files=True,
        help="Reference an image with \\includegraphics{<file name>}"
    )
    imported, errors = sync_uploaded_assets(
        uploaded_images,
        st.session_state["assets"],
        st.session_state["removed_assets"]
    )
    for name in imported:
        st.success(f"Asset \"{name}\" imported. Insert via \\includegraphics{{{name}}}")
    for error in errors:
        st.error(f"Import failed: {error}")

    if st.session_state["assets"]:
        for name in sorted(st.session_state["assets"]):
            name_col, remove_col = st.columns([4, 1])
            with name_col:
                st.code(name, language=None)
            with remove_col:
                if st.button("✕", key=f"remove-{name}", help=f"Remove {name}"):
                    remove_asset(name, st.session_state["assets"], st.session_state["removed_assets"])
                    st.rerun()
    else:
        st.info("No assets imported.")

    st.divider()
    st.subheader("Appearance")
    default_theme = preview_config["theme"].capitalize()
    theme_choice = st.selectbox(
        "Preview theme",
        theme_options,
        index=theme_options.index(default_theme) if default_theme in theme_options else 0
    )
    escape_enabled = st.toggle(
        "Escape HTML in document text",
        value=bool(preview_config["escape_html"]),
        help="Keeps markup typed or generated into the LaTeX source from reaching the page"
    )

theme = theme_map.get(theme_choice, "light")

editor_col, preview_col = st.columns([1, 1], gap="large")
with editor_col:
    st.subheader("Source")
    uploaded_tex = st.file_uploader("Open a .tex file", type=["tex"])
    if uploaded_tex is not None and st.session_state.get("loaded_tex") != uploaded_tex.name:
        try:
            st.session_state["source"] = uploaded_tex.getvalue().decode("utf-8")
            st.session_state["loaded_tex"] = uploaded_tex.name
        except UnicodeDecodeError as e:
            st.error(f"Failed to read file: {e}")
    source = st.text_area(
        "LaTeX",
        value=st.session_state.get("source", starter_document()),
        height=int(preview_config["height"]) - 80
    )
    st.session_state["source"] = source

fragment = render_preview(
    source,
    tuple(st.session_state["assets"].values()),
    escape_enabled,
    format_today()
)
doc_title = document_title(source)
page = build_preview_document(
    fragment,
    title=doc_title,
    theme=theme,
    base_font_size=preview_config["base_font_size"],
    content_width=preview_config["content_width"]
)

with preview_col:
    st.subheader("Preview")
    if fragment == ERROR_FRAGMENT:
        st.warning("Add \\begin{document} ... \\end{document} to see the preview.")
    st.components.v1.html(page, height=int(preview_config["height"]), scrolling=True)

st.divider()

tex_col, html_col, pdf_col = st.columns(3)
with tex_col:
    st.download_button(
        "Download .tex",
        data=(source or "").encode("utf-8"),
        file_name=sanitize_filename_for_format(doc_title, ".tex"),
        mime="application/x-tex",
        use_container_width=True
    )
with html_col:
    st.download_button(
        "Download .html",
        data=page.encode("utf-8"),
        file_name=sanitize_filename_for_format(doc_title, ".html"),
        mime="text/html",
        use_container_width=True
    )
with pdf_col:
    pdf_engine = config["export"]["pdf_engine"] or None
    pdf_available, pdf_error = check_pdf_dependencies(pdf_engine)
    if st.button(
        "Export PDF",
        type="primary",
        disabled=not pdf_available or fragment == ERROR_FRAGMENT,
        help=pdf_error or "Render the preview to PDF",
        use_container_width=True
    ):
        try:
            with st.spinner("Generating PDF..."):
                # Store result in session state so the download button survives reruns
                st.session_state["generated_pdf"] = convert_html_to_pdf(page, pdf_engine=pdf_engine)
                st.session_state["generated_pdf_name"] = sanitize_filename_for_format(doc_title, ".pdf")
            st.success("PDF generated.")
        except (ImportError, RuntimeError) as e:
            st.error(f"PDF export failed: {e}")

    if "generated_pdf" in st.session_state:
        st.download_button(
            "Download PDF",
            data=st.session_state["generated_pdf"],
            file_name=st.session_state.get("generated_pdf_name", "document.pdf"),
            mime="application/pdf",
            use_container_width=True
        )
