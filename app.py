"""Streamlit ops console for the JobTrackr background core."""
from __future__ import annotations

import sys
from pathlib import Path

import streamlit as st

ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT))

from jobtrackr.errors import JobTrackrError
from jobtrackr.log import get_logger
from jobtrackr.models import AnalysisRequest, AnalysisResult, TaskKind, TaskState
from jobtrackr.runtime import Runtime, build_runtime
from jobtrackr.submission import get_task_status, submit_analysis

log = get_logger(__name__)

_CSS = """
<style>
[data-testid="stMetric"] {
    background: rgba(255,255,255,0.6);
    padding: 0.75rem 1rem;
    border-radius: 12px;
    border: 1px solid rgba(0,0,0,0.05);
    box-shadow: 0 4px 16px rgba(0,0,0,0.06);
}
.stButton > button[kind="primary"] {
    border-radius: 8px;
    font-weight: 600;
}
</style>
"""

# ── Helpers ──────────────────────────────────────────────────────────────


@st.cache_resource
def _runtime() -> Runtime:
    return build_runtime()


def _check(label: str, ok: bool) -> str:
    return f"{'✅' if ok else '⬜'} {label}"


def _status_badge(state: TaskState) -> str:
    return {
        TaskState.QUEUED: "🕒 queued",
        TaskState.ACTIVE: "⚙️ active",
        TaskState.COMPLETED: "✅ completed",
        TaskState.FAILED: "❌ failed",
    }[state]


# ── Page: Dashboard ──────────────────────────────────────────────────────


def page_dashboard() -> None:
    st.header("Queue")
    rt = _runtime()
    if rt.queue is None:
        st.warning("Queue disabled (QUEUE_ENABLED=false) — analyses run synchronously.")
        return

    counts = rt.queue.counts()
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Queued", counts[TaskState.QUEUED.value])
    c2.metric("Active", counts[TaskState.ACTIVE.value])
    c3.metric("Completed", counts[TaskState.COMPLETED.value])
    c4.metric("Failed", counts[TaskState.FAILED.value])

    st.divider()
    kinds = ["all"] + [k.value for k in TaskKind]
    kind = st.selectbox("Task kind", kinds)
    tasks = rt.queue.list_tasks(None if kind == "all" else kind, limit=100)
    if not tasks:
        st.info("No tasks yet.")
        return

    import pandas as pd

    df = pd.DataFrame([
        {
            "task_id": t.task_id,
            "kind": t.kind,
            "state": _status_badge(t.state),
            "progress": t.progress,
            "failure_reason": t.failure_reason or "",
            "created_at": t.created_at,
        }
        for t in tasks
    ])
    st.dataframe(
        df,
        use_container_width=True,
        column_config={
            "progress": st.column_config.ProgressColumn("Progress", min_value=0, max_value=100, format="%d%%"),
        },
        hide_index=True,
    )


# ── Page: Analyze ────────────────────────────────────────────────────────


def _show_analysis(result: AnalysisResult) -> None:
    st.metric("Match score", f"{result.match_score}/100")
    c1, c2 = st.columns(2)
    c1.markdown("**Missing skills**\n" + "\n".join(f"- {s}" for s in result.missing_skills))
    c2.markdown("**Recommendations**\n" + "\n".join(f"- {r}" for r in result.recommendations))
    st.caption(f"Analysis `{result.analysis_id}`")


def page_analyze() -> None:
    st.header("CV Analysis")
    rt = _runtime()
    if not rt.settings.ai_configured:
        st.warning("GROQ_API_KEY is not set — analyses will fail until it is configured.")

    with st.form("analysis"):
        c1, c2 = st.columns(2)
        cv_file_id = c1.text_input("CV file id")
        user_id = c2.text_input("User id")
        job_url = st.text_input("Job URL (optional)")
        job_description = st.text_area("Job description", height=220)
        submitted = st.form_submit_button("Submit", type="primary")

    if submitted:
        request = AnalysisRequest(cv_file_id.strip(), job_description, user_id.strip(), job_url or None)
        try:
            submission = submit_analysis(request, rt.queue, rt.analyzer)
        except JobTrackrError as exc:
            st.error(f"{exc.code}: {exc}")
            return
        if submission.queued:
            st.session_state["last_task_id"] = submission.task_id
            st.success(f"Queued as task `{submission.task_id}` — see **Task status**.")
        else:
            st.success("Analysis completed synchronously.")
            _show_analysis(submission.result)


def page_task() -> None:
    st.header("Task status")
    rt = _runtime()
    task_id = st.text_input("Task id", value=st.session_state.get("last_task_id", ""))
    if not task_id or not st.button("Refresh", type="primary"):
        return
    try:
        status = get_task_status(rt.queue, task_id.strip())
    except JobTrackrError as exc:
        st.error(f"{exc.code}: {exc}")
        return

    c1, c2 = st.columns(2)
    c1.metric("State", _status_badge(status.state))
    c2.metric("Progress", f"{status.progress}%")
    st.progress(status.progress / 100)
    if status.state is TaskState.COMPLETED and status.kind == TaskKind.ANALYSIS.value:
        _show_analysis(AnalysisResult.from_dict(status.result))
    elif status.state is TaskState.COMPLETED:
        st.json(status.result or {})
    elif status.state is TaskState.FAILED:
        st.error(status.failure_reason or "Task failed")


# ── Page: Reminders ──────────────────────────────────────────────────────


def page_reminders() -> None:
    st.header("Reminders")
    rt = _runtime()
    sched = rt.scheduler
    now = sched.local_now()

    c1, c2, c3 = st.columns(3)
    c1.metric("Local time", now.strftime("%H:%M"), rt.settings.reminder_timezone, delta_color="off")
    c2.metric("Gate", f"{sched.hour:02d}:00")
    c3.metric("Target date", sched.target_date(now).isoformat())

    due = sched.due_reminders()
    if now.hour < sched.hour:
        st.info("Before the gate hour — a sweep now would send nothing.")
    elif not due:
        st.info("No reminders due.")
    else:
        import pandas as pd

        st.dataframe(
            pd.DataFrame([
                {"company": r.company_name, "position": r.position, "owner": r.owner_email,
                 "reminder_date": r.reminder_date}
                for r in due
            ]),
            use_container_width=True,
            hide_index=True,
        )

    if st.button("Run reminder sweep now", type="primary", disabled=sched.running):
        with st.status("Sweeping…", expanded=False) as sw:
            sent = sched.run_once()
            sw.update(label=f"Sweep complete — {sent} reminder(s) sent", state="complete")
        report = sched.last_report
        if report and report.failed:
            st.warning(f"{len(report.failed)} reminder(s) failed: {', '.join(report.failed)}")

    st.divider()
    app_id = st.text_input("Check reminder status for application id")
    if app_id:
        info = sched.reminder_status(app_id.strip())
        if info["sent"]:
            st.success(f"Reminder sent at {info['sent_at']}")
        else:
            st.info("No reminder sent yet.")


# ── Main ─────────────────────────────────────────────────────────────────


def _inject_css() -> None:
    st.markdown(_CSS, unsafe_allow_html=True)


def _sidebar_status() -> None:
    s = _runtime().settings
    with st.sidebar:
        st.divider()
        st.markdown("**Status**")
        st.markdown(_check("Queue enabled", s.queue_enabled))
        st.markdown(_check("Groq API key", s.ai_configured))
        st.markdown(_check("E-mail transport", bool(s.resend_api_key or s.smtp_host)))


def _wrap(page):
    def run():
        _inject_css()
        _sidebar_status()
        page()

    run.__name__ = page.__name__
    return run


pages = [
    st.Page(_wrap(page_dashboard), title="Queue", icon="📋", url_path="queue", default=True),
    st.Page(_wrap(page_analyze), title="Analyze", icon="🧠", url_path="analyze"),
    st.Page(_wrap(page_task), title="Task status", icon="🔎", url_path="task"),
    st.Page(_wrap(page_reminders), title="Reminders", icon="⏰", url_path="reminders"),
]

nav = st.navigation(pages)
nav.run()
