"""
I/O utilities for DataFrame serialization.

Provides consistent handling of tabular outputs (TSV/CSV/Parquet) such as
the execution trace.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import polars as pl

OutputFormat = Literal["tsv", "csv", "parquet"]


def write_dataframe(
    df: pl.DataFrame,
    path: Path,
    output_format: OutputFormat = "tsv",
) -> None:
    """
    Write DataFrame to file in specified format.

    Parquet output uses zstd compression.

    Example:
        >>> df = pl.DataFrame({"task_id": [1, 2]})
        >>> write_dataframe(df, Path("trace.tsv"))
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if output_format == "parquet":
        df.write_parquet(path, compression="zstd")
    elif output_format == "csv":
        df.write_csv(path)
    else:
        df.write_csv(path, separator="\t")


def read_dataframe(path: Path) -> pl.DataFrame:
    """
    Read DataFrame from file, auto-detecting format from extension.

    Supports: .csv, .tsv, .parquet, .csv.gz, .tsv.gz

    Raises:
        ValueError: If file extension is not recognized.
    """
    suffix = path.suffix.lower()
    name = path.name.lower()

    if suffix == ".parquet":
        return pl.read_parquet(path)
    if suffix == ".csv" or name.endswith(".csv.gz"):
        return pl.read_csv(path)
    if suffix == ".tsv" or name.endswith(".tsv.gz"):
        return pl.read_csv(path, separator="\t")
    msg = f"Unrecognized file format: {path}"
    raise ValueError(msg)
