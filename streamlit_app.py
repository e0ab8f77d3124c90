from __future__ import annotations

import logging
from typing import Any, Dict, List

import altair as alt
import pandas as pd
import streamlit as st

from allocation_manager import CATEGORY_ORDER, AllocationManager, capacity
from frame_scheduler import ManualFrameScheduler
from logging_config import setup_logging
from ranking_engine import (
    PoolSnapshot,
    bucket_for_percent,
    build_tie_buckets,
    rank_feedback,
    rank_table,
)
from score_aggregator import Question, composite, entry_average, option_scores, quantize_average
from survey_config import get_allocation_settings, get_ranking_settings, load_config

logger = logging.getLogger(__name__)

CATEGORY_COLORS = {
    "circle": "#4498E6",
    "square": "#64B883",
    "triangle": "#F4A42F",
    "diamond": "#9E82F1",
}

HELP_SLIDER = (
    "Importance of this category. The four active categories always share a fixed budget, "
    "so raising one lowers the others. Dropping a category to ~0 deactivates it and shrinks the budget."
)
HELP_TIE_POLICY = "strict counts only scores below yours; lte also counts equal scores."
HELP_POOL = "Snapshot of other respondents' entry averages to compare against."

DEMO_QUESTIONS: List[Dict[str, Any]] = [
    {
        "id": "commute",
        "prompt": "How do you usually get to work?",
        "options": [
            {"label": "Bike or walk", "weight": 1.0},
            {"label": "Public transport", "weight": 0.8},
            {"label": "Car pool", "weight": 0.4},
            {"label": "Drive alone", "weight": 0.0},
        ],
    },
    {
        "id": "diet",
        "prompt": "What does a typical dinner look like?",
        "options": [
            {"label": "Plant based", "weight": 1.0},
            {"label": "Mostly vegetarian", "weight": 0.7},
            {"label": "Mixed", "weight": 0.4},
            {"label": "Meat every day", "weight": 0.1},
        ],
    },
    {
        "id": "energy",
        "prompt": "Where does your home energy come from?",
        "options": [
            {"label": "Own solar", "weight": 1.0},
            {"label": "Green tariff", "weight": 0.8},
            {"label": "Standard grid", "weight": 0.3},
            {"label": "Not sure", "weight": 0.5},
        ],
    },
]


def _records(values: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [{"_id": entry_id, "avgWeight": value} for entry_id, value in values.items()]


def build_demo_pools() -> Dict[str, Dict[str, Any]]:
    return {
        "Spread pool": {
            "description": "Twelve respondents spread across the scale.",
            "records": _records({
                f"r{idx:02d}": value
                for idx, value in enumerate(
                    [0.12, 0.25, 0.31, 0.38, 0.44, 0.5, 0.53, 0.58, 0.64, 0.71, 0.79, 0.9]
                )
            }),
        },
        "Tied at the top": {
            "description": "Three respondents who all display 70.",
            "records": _records({"a": 0.701, "b": 0.699, "c": 0.7}),
        },
        "Clustered middle": {
            "description": "Many respondents sharing the same displayed score.",
            "records": _records({
                "m1": 0.48, "m2": 0.5, "m3": 0.5, "m4": 0.504, "m5": 0.496, "m6": 0.62, "m7": 0.33,
            }),
        },
        "Empty pool": {
            "description": "Nobody else has answered yet.",
            "records": [],
        },
    }


def validate_pool_records(records: Any) -> List[str]:
    errors: List[str] = []
    if not isinstance(records, list):
        return ["Pool records must be a list."]
    for idx, record in enumerate(records):
        if not isinstance(record, dict):
            errors.append(f"record_{idx}: entry must be an object.")
            continue
        if "_id" not in record:
            errors.append(f"record_{idx}: missing '_id'.")
        avg = record.get("avgWeight")
        if avg is not None and not isinstance(avg, (int, float)):
            errors.append(f"record_{idx}: 'avgWeight' must be numeric.")
        elif isinstance(avg, (int, float)) and not 0.0 <= avg <= 1.0:
            errors.append(f"record_{idx}: 'avgWeight' must be within [0, 1].")
    return errors


def validate_questions(questions: Any) -> List[str]:
    errors: List[str] = []
    if not isinstance(questions, list) or not questions:
        return ["At least one question is required."]
    for idx, raw in enumerate(questions):
        try:
            Question.from_dict(raw)
        except (AttributeError, TypeError, ValueError) as exc:
            errors.append(f"question_{idx}: {exc}")
    return errors


def build_weight_frame(manager: AllocationManager) -> pd.DataFrame:
    rows = []
    for category in CATEGORY_ORDER:
        rows.append({
            "category": category,
            "weight": manager.weights[category],
            "visual": manager.visual_weights[category],
            "active": category not in manager.deactivated,
        })
    return pd.DataFrame(rows)


def build_trajectory_frame(frames: List[Dict[str, float]]) -> pd.DataFrame:
    if not frames:
        return pd.DataFrame(columns=["frame", "category", "visual"])
    df = pd.DataFrame(frames)
    df.insert(0, "frame", range(1, len(df) + 1))
    return df.melt(id_vars="frame", var_name="category", value_name="visual")


def record_answer(answers: Dict[str, Any], question_id: str, value: Any) -> Any:
    """Store one question's composite and return the entry average over all questions."""
    answers[question_id] = value
    return entry_average(answers)


def _new_manager() -> AllocationManager:
    settings = get_allocation_settings(load_config())
    frames: List[Dict[str, float]] = []
    manager = AllocationManager(settings=settings, scheduler=ManualFrameScheduler(), on_frame=frames.append)
    st.session_state["frames"] = frames
    return manager


def _sync_sliders(manager: AllocationManager) -> None:
    for category in CATEGORY_ORDER:
        st.session_state[f"slider_{category}"] = float(manager.weights[category])


def _on_slider_change(category: str) -> None:
    manager: AllocationManager = st.session_state["manager"]
    frames: List[Dict[str, float]] = st.session_state["frames"]
    frames.clear()
    manager.set_weight(category, st.session_state[f"slider_{category}"])
    frame_count = manager.scheduler.flush()
    logger.debug("Slider %s settled after %d frames.", category, frame_count)
    manager.commit()
    _sync_sliders(manager)


def reset_allocation(manager: AllocationManager, frames: List[Dict[str, float]]) -> Dict[str, float]:
    """Equal weights again, e.g. when the active question changes."""
    frames.clear()
    manager.reset()
    return manager.weights


def _on_reset() -> None:
    manager: AllocationManager = st.session_state["manager"]
    reset_allocation(manager, st.session_state["frames"])
    _sync_sliders(manager)


def render_allocation(manager: AllocationManager) -> None:
    st.subheader("Allocation")
    metric_cols = st.columns(3)
    metric_cols[0].metric("Active categories", manager.state.active_count)
    metric_cols[1].metric("Budget", f"{capacity(manager.state.active_count, manager.settings):.2f}")
    metric_cols[2].metric("Allocated", f"{manager.state.total_active():.2f}")

    weight_df = build_weight_frame(manager)
    chart = (
        alt.Chart(weight_df)
        .mark_bar()
        .encode(
            x=alt.X("category:N", sort=list(CATEGORY_ORDER), title="Category"),
            y=alt.Y("weight:Q", title="Weight", scale=alt.Scale(domain=[0, 1])),
            color=alt.Color(
                "category:N",
                scale=alt.Scale(domain=list(CATEGORY_COLORS), range=list(CATEGORY_COLORS.values())),
                legend=None,
            ),
            opacity=alt.condition(alt.datum.active, alt.value(1.0), alt.value(0.3)),
            tooltip=["category:N", alt.Tooltip("weight:Q", format=".3f"), "active:N"],
        )
        .properties(height=260)
    )
    st.altair_chart(chart, use_container_width=True)

    trajectory_df = build_trajectory_frame(st.session_state.get("frames", []))
    if not trajectory_df.empty:
        st.caption(f"Visual easing settled after {trajectory_df['frame'].max()} frames.")
        easing = (
            alt.Chart(trajectory_df)
            .mark_line(point=True)
            .encode(
                x=alt.X("frame:Q", title="Frame"),
                y=alt.Y("visual:Q", title="Visual weight"),
                color=alt.Color("category:N", title="Category"),
            )
            .properties(height=220)
        )
        st.altair_chart(easing, use_container_width=True)


def render_feedback(pool: PoolSnapshot, value: float, tie_policy: str) -> None:
    settings = get_ranking_settings({"ranking": {"tie_policy": tie_policy}})
    feedback = rank_feedback(pool, value=value, settings=settings)
    st.subheader("Where you stand")
    if feedback is None:
        st.info("No answer could be aggregated yet.")
        return

    metric_cols = st.columns(4)
    metric_cols[0].metric("Your score", f"{feedback.absolute:.0f}/100")
    metric_cols[1].metric("Percentile", feedback.percentile)
    metric_cols[2].metric("Position", feedback.classification.position.value)
    metric_cols[3].metric("Band", feedback.band.band.value)
    st.caption(
        f"{feedback.stats.below} below, {feedback.stats.equal} tied, {feedback.stats.above} above "
        f"(copy bucket {bucket_for_percent(feedback.percentile)})."
    )

    table = rank_table(pool, tie=tie_policy)
    if table.empty:
        return
    histogram = (
        alt.Chart(table)
        .mark_bar()
        .encode(
            x=alt.X("display_key:Q", bin=alt.Bin(step=10), title="Displayed score"),
            y=alt.Y("count():Q", title="Respondents"),
        )
        .properties(height=200)
    )
    st.altair_chart(histogram, use_container_width=True)
    st.dataframe(table, use_container_width=True)

    buckets = build_tie_buckets(pool)
    if buckets:
        st.markdown("Tie buckets")
        st.dataframe(
            pd.DataFrame(
                [{"display_key": b.display_key, "members": ", ".join(b.member_ids)} for b in buckets]
            ),
            use_container_width=True,
        )


def app() -> None:
    setup_logging()
    st.set_page_config(page_title="Radial Survey Demo", layout="wide")
    st.title("Radial Survey Demo")
    st.caption("Move the sliders to allocate importance, then see how your score compares.")

    if "manager" not in st.session_state:
        st.session_state["manager"] = _new_manager()
        _sync_sliders(st.session_state["manager"])
    manager: AllocationManager = st.session_state["manager"]

    pools = build_demo_pools()
    st.sidebar.header("1) Question")
    question_ids = [q["id"] for q in DEMO_QUESTIONS]
    question_id = st.sidebar.selectbox("Question", question_ids, key="question", on_change=_on_reset)
    question = Question.from_dict(next(q for q in DEMO_QUESTIONS if q["id"] == question_id))

    st.sidebar.header("2) Importances")
    for category in CATEGORY_ORDER:
        st.sidebar.slider(
            category,
            min_value=0.0,
            max_value=1.0,
            step=0.01,
            key=f"slider_{category}",
            help=HELP_SLIDER,
            on_change=_on_slider_change,
            args=(category,),
        )
    st.sidebar.button("Reset to equal weights", on_click=_on_reset)

    st.sidebar.header("3) Pool")
    pool_name = st.sidebar.selectbox("Comparison pool", list(pools), help=HELP_POOL)
    tie_policy = st.sidebar.radio("Tie policy", ["strict", "lte"], help=HELP_TIE_POLICY)

    st.markdown(f"**{question.prompt}**")
    render_allocation(manager)

    st.subheader("Answer")
    value = composite(question, manager.rounded_weights())
    st.dataframe(pd.DataFrame(option_scores(question, manager.rounded_weights())), use_container_width=True)
    if value is None:
        st.warning("Every option's category is deactivated; this question counts as skipped.")
    else:
        st.metric("Composite", f"{value:.2f}", help=f"Quantized level {quantize_average(value):.3f}")

    answers: Dict[str, Any] = st.session_state.setdefault("answers", {})
    average = record_answer(answers, question.id, value)
    answered = sum(1 for v in answers.values() if v is not None)
    if average is not None:
        st.metric("Entry average", f"{average:.2f}", help=f"Over {answered} answered question(s).")

    records = pools[pool_name]["records"]
    errors = validate_pool_records(records)
    if errors:
        logger.warning("Pool %r rejected: %s", pool_name, errors)
        st.error("\n".join(errors))
        return
    st.caption(pools[pool_name]["description"])
    render_feedback(PoolSnapshot.from_records(records), average, tie_policy)


if __name__ == "__main__":
    app()
