import asyncio
import io
import json
from pathlib import Path

import streamlit as st

from exam_ensemble.config import EnsembleConfig, DEFAULT_ROSTER
from exam_ensemble.errors import EnsembleExhausted, describe_error
from exam_ensemble.models import Question, QuestionKind, QuestionOption
from exam_ensemble.solver import QuestionSolver
from exam_ensemble.stats import compute_stats

st.set_page_config(page_title="Exam Ensemble", layout="wide")

SETTINGS_PATH = Path(__file__).parent / "settings.json"

KIND_LABELS = {
    "Single choice": QuestionKind.SINGLE,
    "Checkbox (select all)": QuestionKind.MULTI,
    "True / False": QuestionKind.TRUE_FALSE,
}


def load_settings():
    """Load settings from settings.json, falling back to built-in defaults."""
    if SETTINGS_PATH.exists():
        with open(SETTINGS_PATH) as f:
            return json.load(f)
    return {
        "models": list(DEFAULT_ROSTER),
        "ensemble": {},
        "ui": {"max_image_dimension": 1536},
    }


SETTINGS = load_settings()
MODELS_CATALOG = SETTINGS.get("models", list(DEFAULT_ROSTER))
ENSEMBLE_DEFAULTS = SETTINGS.get("ensemble", {})
MAX_IMAGE_DIMENSION = SETTINGS.get("ui", {}).get("max_image_dimension", 1536)


def init_session_state():
    if "solver" not in st.session_state:
        st.session_state.solver = None
    if "solver_key" not in st.session_state:
        st.session_state.solver_key = None
    if "run_logs" not in st.session_state:
        st.session_state.run_logs = []
    if "last_result" not in st.session_state:
        st.session_state.last_result = None


def parse_options(text: str) -> list[QuestionOption]:
    """One option per line, "A. text" or "A) text"; bare lines get letters in order."""
    options = []
    for line in (l.strip() for l in text.splitlines()):
        if not line:
            continue
        head, sep, rest = line.partition(" ")
        label = head.rstrip(".):")
        if sep and len(label) == 1 and label.isalpha() and head != label:
            options.append(QuestionOption(label=label.upper(), text=rest.strip()))
        else:
            options.append(QuestionOption(label=chr(ord("A") + len(options)), text=line))
    return options


def _resize_image_bytes(img_bytes: bytes, max_dim: int) -> bytes:
    """Downscale an image if larger than max_dim, preserving aspect ratio."""
    from PIL import Image

    img = Image.open(io.BytesIO(img_bytes))
    w, h = img.size
    if max(w, h) <= max_dim:
        return img_bytes

    if w > h:
        new_w, new_h = max_dim, int(h * max_dim / w)
    else:
        new_w, new_h = int(w * max_dim / h), max_dim
    img = img.resize((new_w, new_h), Image.LANCZOS)
    if img.mode in ("RGBA", "P"):
        img = img.convert("RGB")

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=90)
    return buf.getvalue()


def get_solver(config: EnsembleConfig) -> QuestionSolver:
    # Reuse the solver (and its cache) while the configuration is unchanged
    key = config.model_dump_json()
    if st.session_state.solver is None or st.session_state.solver_key != key:
        st.session_state.run_logs = []
        st.session_state.solver = QuestionSolver(config, on_attempt=st.session_state.run_logs.append)
        st.session_state.solver_key = key
    return st.session_state.solver


def render_result(result):
    col1, col2, col3 = st.columns(3)
    col1.metric("Answer", result.final_answer)
    col2.metric("Confidence", f"{result.final_confidence}%")
    col3.metric("Method", result.method.value + (" (cached)" if result.cached else ""))
    st.caption(f"Resolved in {result.elapsed_ms} ms")

    if result.votes:
        st.subheader("Votes")
        st.table([{"answer": a, **v} for a, v in result.votes.items()])
    if result.provider_answers:
        st.subheader("Worker answers")
        st.table([pa.model_dump() for pa in result.provider_answers])


def main():
    init_session_state()

    st.title("Exam Ensemble")

    col_left, col_right = st.columns([2, 1])

    with col_right:
        st.subheader("Ensemble")
        workers = st.multiselect(
            "Workers (asked in parallel)",
            options=MODELS_CATALOG,
            default=[m for m in ENSEMBLE_DEFAULTS.get("workers", DEFAULT_ROSTER[:-1]) if m in MODELS_CATALOG],
        )
        judge = st.selectbox(
            "Judge (asked when workers disagree)",
            options=["(none)"] + MODELS_CATALOG,
            index=1 + MODELS_CATALOG.index(DEFAULT_ROSTER[-1]) if DEFAULT_ROSTER[-1] in MODELS_CATALOG else 0,
        )
        mode = st.radio("Mode", options=["ensemble", "failover"], horizontal=True)
        max_attempts = st.number_input("Attempts per call", min_value=1, max_value=10, value=ENSEMBLE_DEFAULTS.get("max_attempts", 3))
        cache_ttl_s = st.number_input("Cache TTL (s)", min_value=1, value=int(ENSEMBLE_DEFAULTS.get("cache_ttl_s", 120)))

    with col_left:
        st.subheader("Question")
        question_text = st.text_area("Question text", height=120, key="question_input")
        options_text = st.text_area("Options (one per line, e.g. \"A. 192.168.0.1\")", height=150, key="options_input")
        kind_label = st.selectbox("Type", options=list(KIND_LABELS))
        uploaded = st.file_uploader("Image (optional)", type=["png", "jpg", "jpeg", "gif", "webp"])

        image = None
        if uploaded is not None:
            image = _resize_image_bytes(uploaded.read(), MAX_IMAGE_DIMENSION)
            st.image(image, width=320)

        roster = list(workers) + ([judge] if judge != "(none)" else [])
        needs_judge = judge == "(none)" and len(workers) > 1
        can_run = bool(question_text.strip()) and bool(roster) and not needs_judge
        if not roster:
            st.warning("Select at least one worker")
        elif needs_judge:
            st.warning("Several workers need a judge to break ties")

        if st.button("Answer", type="primary", disabled=not can_run):
            config = EnsembleConfig(
                **{
                    **{k: v for k, v in ENSEMBLE_DEFAULTS.items() if k != "workers"},
                    "roster": roster,
                    "mode": mode,
                    "max_attempts": int(max_attempts),
                    "cache_ttl_s": float(cache_ttl_s),
                }
            )
            question = Question(
                text=question_text.strip(),
                options=tuple(parse_options(options_text)),
                kind=KIND_LABELS[kind_label],
                image=image,
            )
            solver = get_solver(config)
            with st.spinner("Asking the ensemble..."):
                try:
                    st.session_state.last_result = asyncio.run(solver.solve(question))
                except EnsembleExhausted as e:
                    st.session_state.last_result = None
                    st.error(f"{describe_error(e.kind)}: {e}")

        if st.session_state.last_result is not None:
            render_result(st.session_state.last_result)

        if st.session_state.run_logs:
            with st.expander("Call log and stats", expanded=False):
                st.json(compute_stats(st.session_state.run_logs)["overall"])
                st.dataframe([
                    {k: r.get(k) for k in ("stage", "provider_id", "attempt", "status", "error_kind", "latency_ms")}
                    for r in st.session_state.run_logs
                ])


if __name__ == "__main__":
    main()
