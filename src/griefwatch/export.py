"""
Export Functionality for Griefwatch

Provides export formats for analysis results:
- JSON (default): the full result aggregate, camelCase keys
- CSV: one flat row per finding, tagged with its category
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd

from griefwatch import __version__
from griefwatch.pipeline.orchestrator import FINDING_PATHS, AnalysisResults

logger = logging.getLogger(__name__)


# ============================================================================
# Data Conversion Utilities
# ============================================================================


def flatten_dict(d: dict, parent_key: str = "", sep: str = "_") -> dict:
    """Flatten a nested dictionary."""
    items: list[tuple[str, Any]] = []
    for k, v in d.items():
        new_key = f"{parent_key}{sep}{k}" if parent_key else k
        if isinstance(v, dict):
            items.extend(flatten_dict(v, new_key, sep).items())
        else:
            items.append((new_key, v))
    return dict(items)


def _unnest(record: dict, path: tuple[str, ...]) -> list[dict]:
    if not path:
        return [record]
    found = []
    for child in record.get(path[0], []):
        found.extend(_unnest(child, path[1:]))
    return found


def flatten_findings(results: AnalysisResults) -> list[dict[str, Any]]:
    """One flat row per individual finding, with a ``category`` column."""
    rows: list[dict[str, Any]] = []
    for category, records in results.categories().items():
        path = FINDING_PATHS.get(category, ())
        for record in records:
            for finding in _unnest(record.to_dict(), path):
                row = {"category": category}
                for key, value in flatten_dict(finding).items():
                    if isinstance(value, list):
                        row[key] = ";".join(str(x) for x in value)
                    else:
                        row[key] = value
                rows.append(row)
    return rows


# ============================================================================
# JSON Export
# ============================================================================


def export_to_json(
    results: AnalysisResults,
    output_path: Path | None = None,
    indent: int = 2,
    include_metadata: bool = True,
) -> str:
    """
    Export analysis results to JSON format.

    Args:
        results: Analysis results aggregate
        output_path: Optional path to write the file
        indent: JSON indentation level
        include_metadata: Whether to include export metadata

    Returns:
        JSON string
    """
    export_data = results.to_dict()

    if include_metadata:
        export_data = {
            "_metadata": {
                "exported_at": datetime.now().isoformat(),
                "format": "griefwatch_json",
                "version": __version__,
            },
            **export_data,
        }

    json_str = json.dumps(export_data, indent=indent, default=str)

    if output_path:
        output_path.write_text(json_str, encoding="utf-8")
        logger.info(f"Exported JSON to: {output_path}")

    return json_str


# ============================================================================
# CSV Export
# ============================================================================


def export_to_csv(results: AnalysisResults, output_path: Path | None = None) -> str:
    """
    Export every finding as one row of a CSV table.

    Columns are the union over all categories; cells a category doesn't
    have are left empty.
    """
    df = pd.DataFrame(flatten_findings(results))
    if df.empty:
        df = pd.DataFrame(columns=["category"])

    csv_str = df.to_csv(index=False)

    if output_path:
        output_path.write_text(csv_str, encoding="utf-8")
        logger.info(f"Exported {len(df)} findings to CSV: {output_path}")

    return csv_str


def export_results(results: AnalysisResults, output_path: Path | str, format: str | None = None) -> None:
    """
    Export analysis results to the specified format.

    Format is detected from file extension if not specified.
    """
    output_path = Path(output_path)
    if format is None:
        format = output_path.suffix.lstrip(".").lower() or "json"

    if format == "json":
        export_to_json(results, output_path)
    elif format == "csv":
        export_to_csv(results, output_path)
    else:
        raise ValueError(f"Unsupported export format: {format}")
