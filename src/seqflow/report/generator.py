"""
Report generator for the HTML execution report.

Renders a self-contained HTML page summarising one run: status counts,
a task timeline, per-process statistics, failed tasks, excluded processes
and the full task table.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import plotly.graph_objects as go

from seqflow.core.units import format_duration, format_memory
from seqflow.models.task import TaskInstance, TaskStatus
from seqflow.report.styles import get_css_styles
from seqflow.report.templates import (
    EMPTY_SECTION_TEMPLATE,
    KPI_CARD_TEMPLATE,
    KPI_STRIP_TEMPLATE,
    PLOT_ROW_TEMPLATE,
    REPORT_BASE_TEMPLATE,
    SECTION_TEMPLATE,
    TABLE_TEMPLATE,
)

if TYPE_CHECKING:
    from seqflow.core.completion import RunSummary

logger = logging.getLogger(__name__)

STATUS_COLORS: dict[str, str] = {
    TaskStatus.SUCCEEDED.value: "#22c55e",
    TaskStatus.FAILED.value: "#ef4444",
    TaskStatus.CACHED.value: "#94a3b8",
    TaskStatus.CANCELLED.value: "#f59e0b",
    TaskStatus.RUNNING.value: "#667eea",
    TaskStatus.QUEUED.value: "#a855f7",
    TaskStatus.PENDING.value: "#64748b",
}


def _esc(value: object) -> str:
    return html.escape("" if value is None else str(value))


class ExecutionReport:
    """
    Generates the HTML execution report for a finished run.

    Plots are registered as JSON and initialised with ``Plotly.newPlot``
    once the page has loaded.
    """

    def __init__(
        self,
        summary: RunSummary,
        instances: list[TaskInstance],
        theme: str = "light",
    ) -> None:
        self.summary = summary
        self.instances = instances
        self.theme = theme
        self._plot_data: dict[str, str] = {}

    def generate(self, output_path: Path | str) -> None:
        """
        Generate and save the HTML report.

        Args:
            output_path: Path for output HTML file
        """
        document = self._build_html()

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(document, encoding="utf-8")
        logger.debug("Wrote execution report to %s", output_path)

    def _build_html(self) -> str:
        from seqflow import __version__

        s = self.summary
        sections = [
            self._build_overview_section(),
            self._build_process_section(),
            self._build_failure_section(),
            self._build_excluded_section(),
            self._build_task_table_section(),
        ]
        return REPORT_BASE_TEMPLATE.format(
            title=_esc(f"seqflow report: {s.pipeline}"),
            run_id=_esc(s.run_id),
            started=s.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            duration=format_duration(s.duration_s),
            status_class="success" if s.success else "failure",
            status_text=_esc(self._status_text()),
            css_styles=get_css_styles(self.theme),
            content="\n".join(sections),
            version=__version__,
            timestamp=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            plotly_js=self._build_plotly_js(),
        )

    def _status_text(self) -> str:
        s = self.summary
        if s.success:
            return f"Completed: {s.status_line()}"
        reason = f" ({s.abort_reason})" if s.abort_reason else ""
        return f"Aborted{reason}: {s.status_line()}"

    # -------------------------------------------------------------------------
    # Sections
    # -------------------------------------------------------------------------

    def _build_overview_section(self) -> str:
        cards = [
            KPI_CARD_TEMPLATE.format(
                css_class="", value=len(self.instances), label="Tasks"
            )
        ]
        for status in (
            TaskStatus.SUCCEEDED,
            TaskStatus.FAILED,
            TaskStatus.CACHED,
            TaskStatus.CANCELLED,
        ):
            cards.append(KPI_CARD_TEMPLATE.format(
                css_class=status.value,
                value=self.summary.count(status),
                label=status.value.capitalize(),
            ))
        body = [KPI_STRIP_TEMPLATE.format(cards="\n".join(cards))]

        if self.instances:
            self._register_plot("timeline-plot", self._timeline_figure())
            self._register_plot("status-plot", self._status_figure())
            body.append(PLOT_ROW_TEMPLATE.format(left_id="timeline-plot", right_id="status-plot"))
        else:
            body.append(EMPTY_SECTION_TEMPLATE.format(message="No task instances were created."))

        return SECTION_TEMPLATE.format(section_id="overview", heading="Overview", body="\n".join(body))

    def _build_process_section(self) -> str:
        if not self.summary.processes:
            body = EMPTY_SECTION_TEMPLATE.format(message="No processes in this pipeline.")
        else:
            header = ["Process", "Total", "Succeeded", "Failed", "Cached", "Cancelled", "Mean", "Max"]
            rows = []
            for p in self.summary.processes:
                cells = [
                    f"<td>{_esc(p.name)}</td>",
                    *(
                        f'<td class="numeric">{n}</td>'
                        for n in (p.total, p.succeeded, p.failed, p.cached, p.cancelled)
                    ),
                    f'<td class="numeric">{format_duration(p.mean_duration_s)}</td>',
                    f'<td class="numeric">{format_duration(p.max_duration_s)}</td>',
                ]
                rows.append(f"            <tr>{''.join(cells)}</tr>")
            body = self._table(header, rows)
        return SECTION_TEMPLATE.format(section_id="processes", heading="Processes", body=body)

    def _build_failure_section(self) -> str:
        failed = self.summary.failed
        if not failed:
            body = EMPTY_SECTION_TEMPLATE.format(message="No failed tasks.")
        else:
            header = ["Task", "Exit", "Error", "Work directory"]
            rows = []
            for f in failed:
                error = f.error
                if f.propagated_from:
                    error = f"upstream failure in {f.propagated_from}"
                rows.append(
                    "            <tr>"
                    f"<td>{_esc(f.task)}</td>"
                    f'<td class="numeric">{_esc(f.exit_code)}</td>'
                    f"<td>{_esc(error)}</td>"
                    f'<td class="mono">{_esc(f.workdir)}</td>'
                    "</tr>"
                )
            body = self._table(header, rows)
        return SECTION_TEMPLATE.format(
            section_id="failures", heading=f"Failed tasks ({len(failed)})", body=body
        )

    def _build_excluded_section(self) -> str:
        excluded = self.summary.excluded
        if not excluded:
            return ""
        rows = [
            f"            <tr><td>{_esc(e.name)}</td><td>{_esc(e.reason)}</td></tr>"
            for e in excluded
        ]
        return SECTION_TEMPLATE.format(
            section_id="excluded",
            heading="Excluded processes",
            body=self._table(["Process", "Reason"], rows),
        )

    def _build_task_table_section(self) -> str:
        if not self.instances:
            return ""
        header = ["#", "Task", "Status", "Exit", "Attempt", "CPUs", "Memory", "Duration", "Work directory"]
        rows = []
        for inst in self.instances:
            status = inst.status.value
            rows.append(
                "            <tr>"
                f'<td class="numeric">{inst.index}</td>'
                f"<td>{_esc(inst.label)}</td>"
                f'<td class="status-{status}">{status}</td>'
                f'<td class="numeric">{_esc(inst.exit_code)}</td>'
                f'<td class="numeric">{inst.attempt}</td>'
                f'<td class="numeric">{inst.resources.cpus}</td>'
                f'<td class="numeric">{format_memory(inst.resources.memory_mb)}</td>'
                f'<td class="numeric">{format_duration(inst.duration)}</td>'
                f'<td class="mono">{_esc(inst.workdir)}</td>'
                "</tr>"
            )
        return SECTION_TEMPLATE.format(
            section_id="tasks", heading="Tasks", body=self._table(header, rows)
        )

    @staticmethod
    def _table(header: list[str], rows: list[str]) -> str:
        return TABLE_TEMPLATE.format(
            header="".join(f"<th>{_esc(h)}</th>" for h in header),
            rows="\n".join(rows),
        )

    # -------------------------------------------------------------------------
    # Figures
    # -------------------------------------------------------------------------

    def _timeline_figure(self) -> go.Figure:
        """Horizontal bars from task start to completion, relative to run start."""
        started = [i.started_at for i in self.instances if i.started_at is not None]
        origin = min(started) if started else 0.0

        fig = go.Figure()
        by_status: dict[str, list[TaskInstance]] = {}
        for inst in self.instances:
            if inst.started_at is None:
                continue
            by_status.setdefault(inst.status.value, []).append(inst)

        for status, members in by_status.items():
            fig.add_trace(go.Bar(
                name=status,
                orientation="h",
                y=[m.label for m in members],
                base=[m.started_at - origin for m in members],
                x=[max(m.duration or 0.0, 0.01) for m in members],
                marker_color=STATUS_COLORS.get(status, "#64748b"),
                hovertemplate="%{y}<br>start +%{base:.1f}s<br>%{x:.2f}s<extra></extra>",
            ))

        fig.update_layout(
            title="Task timeline",
            barmode="overlay",
            xaxis_title="Seconds since first task start",
            yaxis={"autorange": "reversed"},
            height=max(320, 24 * len(self.instances) + 120),
            margin={"l": 160, "r": 20, "t": 50, "b": 50},
            template="plotly_white",
        )
        return fig

    def _status_figure(self) -> go.Figure:
        labels = [k for k, v in self.summary.counts.items() if v]
        values = [self.summary.counts[k] for k in labels]
        fig = go.Figure(go.Pie(
            labels=labels,
            values=values,
            hole=0.5,
            marker={"colors": [STATUS_COLORS.get(k, "#64748b") for k in labels]},
            sort=False,
        ))
        fig.update_layout(
            title="Task status",
            height=320,
            margin={"l": 20, "r": 20, "t": 50, "b": 20},
            template="plotly_white",
        )
        return fig

    def _register_plot(self, plot_id: str, fig: go.Figure) -> None:
        """Register a plot for later JS initialization."""
        self._plot_data[plot_id] = fig.to_json()

    def _build_plotly_js(self) -> str:
        """Build Plotly.js initialization code for all plots."""
        js_lines = ["<script>"]
        js_lines.append("document.addEventListener('DOMContentLoaded', function() {")

        for plot_id, plot_json in self._plot_data.items():
            var = f"data_{plot_id.replace('-', '_')}"
            js_lines.append(f"  var {var} = {plot_json};")
            js_lines.append(
                f"  Plotly.newPlot('{plot_id}', {var}.data, {var}.layout, {{responsive: true}});"
            )

        js_lines.append("});")
        js_lines.append("</script>")
        return "\n".join(js_lines)
