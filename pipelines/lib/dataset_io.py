import io
import logging
from typing import Optional

import pandas as pd

from pipelines.lib.table_models import Dataset

SUPPORTED_EXTENSIONS = ("csv", "tsv", "xlsx", "xls")


def guess_ext(filename: Optional[str], content_type: Optional[str]) -> str:
    if filename and "." in filename:
        return filename.rsplit(".", 1)[-1].lower()
    if content_type:
        ct = content_type.lower()
        if "csv" in ct:
            return "csv"
        if "tsv" in ct or "tab-separated" in ct:
            return "tsv"
        if "excel" in ct or "spreadsheet" in ct:
            return "xlsx"
    return ""


def _clean_frame(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [str(c).strip() for c in df.columns]
    df = df.loc[:, [c for c in df.columns if c and not c.startswith("Unnamed:")]]
    df = df.astype(object).where(pd.notna(df), "")
    for col in df.columns:
        df[col] = df[col].map(lambda v: v.strip() if isinstance(v, str) else v)
    if len(df.columns):
        df = df[~(df == "").all(axis=1)].reset_index(drop=True)
    return df


def load_dataset(data: bytes, filename: str = "", content_type: str = "", max_rows: int = 200000) -> Dataset:
    """Parse an uploaded CSV/TSV/Excel file into a dataset of trimmed cells."""
    ext = guess_ext(filename, content_type) or "csv"
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(f"unsupported_file_format:{ext}")
    if not data:
        raise ValueError("empty_file")

    if ext in {"xlsx", "xls"}:
        df = pd.read_excel(io.BytesIO(data), engine="openpyxl", dtype=object, nrows=max_rows)
    else:
        df = pd.read_csv(
            io.BytesIO(data),
            sep="\t" if ext == "tsv" else ",",
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            nrows=max_rows,
        )
    df = _clean_frame(df)
    logging.info("event=dataset_loaded ext=%s rows=%s cols=%s", ext, len(df), len(df.columns))
    return Dataset.from_frame(df)
