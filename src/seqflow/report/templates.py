"""
HTML string templates for the execution report.

Templates use ``str.format`` placeholders, so literal braces in CSS or
JavaScript are doubled.
"""

from __future__ import annotations

REPORT_BASE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title>
<script src="https://cdn.plot.ly/plotly-2.27.0.min.js"></script>
<style>
{css_styles}
</style>
</head>
<body>
<header class="report-header">
    <h1>{title}</h1>
    <div class="metadata">
        <span>Run: {run_id}</span>
        <span>Started: {started}</span>
        <span>Duration: {duration}</span>
    </div>
</header>
<div class="status-banner {status_class}">{status_text}</div>
<main>
{content}
</main>
<footer>Generated by seqflow {version} on {timestamp}</footer>
{plotly_js}
</body>
</html>
"""

SECTION_TEMPLATE = """<section id="{section_id}">
    <h2>{heading}</h2>
{body}
</section>"""

KPI_STRIP_TEMPLATE = """    <div class="kpi-strip">
{cards}
    </div>"""

KPI_CARD_TEMPLATE = """        <div class="kpi-card {css_class}">
            <div class="kpi-value">{value}</div>
            <div class="kpi-label">{label}</div>
        </div>"""

PLOT_ROW_TEMPLATE = """    <div class="plot-row">
        <div id="{left_id}" class="plotly-chart"></div>
        <div id="{right_id}" class="plotly-chart"></div>
    </div>"""

TABLE_TEMPLATE = """    <table class="data-table">
        <thead><tr>{header}</tr></thead>
        <tbody>
{rows}
        </tbody>
    </table>"""

EMPTY_SECTION_TEMPLATE = """    <p class="empty-note">{message}</p>"""
