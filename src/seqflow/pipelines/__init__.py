"""
Bundled pipeline definitions.

Each entry maps a pipeline name usable on the command line
(``seqflow run predictorthologs``) to the module that defines it.
"""

from __future__ import annotations

BUNDLED: dict[str, str] = {
    "predictorthologs": "seqflow.pipelines.predictorthologs",
}


def bundled_names() -> list[str]:
    return sorted(BUNDLED)
