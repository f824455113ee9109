"""
CSS styles for the HTML execution report.

Light and dark themes share the same layout rules; only the colour
variables differ.
"""

from __future__ import annotations

# =============================================================================
# Theme variables
# =============================================================================

LIGHT_VARIABLES: str = """
:root {
    --bg-page:        #f0f2f5;
    --bg-card:        #ffffff;
    --bg-secondary:   #f8f9fa;
    --text-primary:   #1a1a2e;
    --text-secondary: #6b7280;
    --border-color:   #e4e7eb;
    --header-bg:      #1a1a2e;
    --accent-color:   #667eea;
    --success-color:  #22c55e;
    --warning-color:  #f59e0b;
    --danger-color:   #ef4444;
    --muted-color:    #94a3b8;
    --shadow-md: 0 2px 4px rgba(0,0,0,0.06);
    --radius-md: 6px;
}
"""

DARK_VARIABLES: str = """
:root {
    --bg-page:        #0f172a;
    --bg-card:        #1e293b;
    --bg-secondary:   #273449;
    --text-primary:   #e2e8f0;
    --text-secondary: #94a3b8;
    --border-color:   #334155;
    --header-bg:      #020617;
    --accent-color:   #818cf8;
    --success-color:  #4ade80;
    --warning-color:  #fbbf24;
    --danger-color:   #f87171;
    --muted-color:    #64748b;
    --shadow-md: 0 2px 4px rgba(0,0,0,0.4);
    --radius-md: 6px;
}
"""

# =============================================================================
# Layout
# =============================================================================

BASE_LAYOUT: str = """
* {
    box-sizing: border-box;
    margin: 0;
    padding: 0;
}

body {
    font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto,
                 "Helvetica Neue", Arial, sans-serif;
    background-color: var(--bg-page);
    color: var(--text-primary);
    line-height: 1.5;
    font-size: 13px;
}

/* Header */
.report-header {
    background: var(--header-bg);
    color: white;
    padding: 1.25rem 2rem 1rem;
    text-align: center;
}

.report-header h1 {
    font-size: 1.25rem;
    font-weight: 600;
    margin-bottom: 0.5rem;
}

.report-header .metadata {
    display: flex;
    justify-content: center;
    gap: 2rem;
    font-size: 0.875rem;
    opacity: 0.9;
}

.status-banner {
    padding: 0.75rem 2rem;
    font-weight: 600;
    text-align: center;
    color: white;
}

.status-banner.success { background: var(--success-color); }
.status-banner.failure { background: var(--danger-color); }

main {
    max-width: 1280px;
    margin: 0 auto;
    padding: 1.5rem 2rem 3rem;
}

section {
    background: var(--bg-card);
    border: 1px solid var(--border-color);
    border-radius: var(--radius-md);
    box-shadow: var(--shadow-md);
    padding: 1.25rem 1.5rem;
    margin-bottom: 1.25rem;
}

section h2 {
    font-size: 1rem;
    font-weight: 600;
    margin-bottom: 0.75rem;
}

/* KPI strip */
.kpi-strip {
    display: grid;
    grid-template-columns: repeat(auto-fit, minmax(140px, 1fr));
    gap: 0.75rem;
}

.kpi-card {
    background: var(--bg-secondary);
    border-radius: var(--radius-md);
    padding: 0.75rem 1rem;
    border-left: 4px solid var(--accent-color);
}

.kpi-card .kpi-value {
    font-size: 1.5rem;
    font-weight: 700;
}

.kpi-card .kpi-label {
    color: var(--text-secondary);
    font-size: 0.75rem;
    text-transform: uppercase;
    letter-spacing: 0.04em;
}

.kpi-card.succeeded { border-left-color: var(--success-color); }
.kpi-card.failed    { border-left-color: var(--danger-color); }
.kpi-card.cached    { border-left-color: var(--muted-color); }
.kpi-card.cancelled { border-left-color: var(--warning-color); }

/* Plots */
.plot-row {
    display: grid;
    grid-template-columns: 2fr 1fr;
    gap: 1rem;
}

.plotly-chart {
    width: 100%;
    min-height: 320px;
}

/* Tables */
table.data-table {
    width: 100%;
    border-collapse: collapse;
    font-size: 0.8125rem;
}

table.data-table th,
table.data-table td {
    padding: 0.4rem 0.6rem;
    border-bottom: 1px solid var(--border-color);
    text-align: left;
    vertical-align: top;
}

table.data-table th {
    background: var(--bg-secondary);
    font-weight: 600;
}

table.data-table td.numeric {
    text-align: right;
    font-variant-numeric: tabular-nums;
}

td.status-succeeded { color: var(--success-color); font-weight: 600; }
td.status-failed    { color: var(--danger-color); font-weight: 600; }
td.status-cached    { color: var(--muted-color); font-weight: 600; }
td.status-cancelled { color: var(--warning-color); font-weight: 600; }

code, .mono {
    font-family: "SFMono-Regular", Consolas, "Liberation Mono", monospace;
    font-size: 0.75rem;
    word-break: break-all;
}

.empty-note {
    color: var(--text-secondary);
    font-style: italic;
}

footer {
    text-align: center;
    color: var(--text-secondary);
    font-size: 0.75rem;
    padding: 1rem 0 2rem;
}

@media (max-width: 900px) {
    .plot-row { grid-template-columns: 1fr; }
}
"""


def get_css_styles(theme: str = "light") -> str:
    """
    Get CSS styles for specified theme.

    Args:
        theme: Theme name ('light' or 'dark')

    Returns:
        CSS stylesheet string
    """
    variables = DARK_VARIABLES if theme.lower() == "dark" else LIGHT_VARIABLES
    return variables + BASE_LAYOUT
