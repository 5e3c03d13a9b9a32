"""
validation.py - Input validation for signal batches and account profiles.

Both validators follow the same contract: they never raise on bad data,
they return ``(is_valid, errors, cleaned_df)`` so the caller can log the
problems and decide whether to proceed.  Soft problems (rows that are
dropped) are reported with a ``Warning:`` prefix and do not make the input
invalid.
"""

from __future__ import annotations

from typing import List, Tuple

import pandas as pd

from graph.models import EdgeType

# ── Required schemas ─────────────────────────────────────────────────────────
SIGNAL_COLUMNS = {
    "edge_type": "string",
    "user_a": "string",
    "user_b": "string",
    "strength": "float",
    "observed_at": "datetime",
}

ACCOUNT_COLUMNS = {
    "user_id": "string",
    "created_at": "datetime",
    "bio": "string",
    "outbound_messages": "int",
    "inbound_replies": "int",
    "kyc_progress": "float",
}

MAX_ROWS_SOFT_LIMIT = 200_000


# ── Public API ───────────────────────────────────────────────────────────────

def validate_signals(df: pd.DataFrame) -> Tuple[bool, List[str], pd.DataFrame]:
    """Validate and clean a batch of raw signals.

    Rows with an unknown edge type, missing ids, self-links, a strength
    outside [0, 1] or an unparsable time are dropped with a warning.

    Returns
    -------
    is_valid : bool
    errors : list[str]
    cleaned_df : pd.DataFrame
        Type-cast rows sorted by ``observed_at`` (empty on failure).
    """
    errors: List[str] = []

    # 1. Required columns -------------------------------------------------------
    missing = set(SIGNAL_COLUMNS) - set(df.columns)
    if missing:
        errors.append(f"Missing required columns: {', '.join(sorted(missing))}")
        return False, errors, pd.DataFrame()

    cleaned = df.copy()

    # 2. Ids and edge types -----------------------------------------------------
    for col in ("user_a", "user_b"):
        cleaned[col] = cleaned[col].fillna("").astype(str).str.strip()
    cleaned["edge_type"] = cleaned["edge_type"].fillna("").astype(str).str.strip().str.upper()

    known_types = {t.value for t in EdgeType}
    checks = {
        "unknown edge type": ~cleaned["edge_type"].isin(known_types),
        "empty account id": (cleaned["user_a"] == "") | (cleaned["user_b"] == ""),
        "self-link": cleaned["user_a"] == cleaned["user_b"],
    }

    # 3. Strength ---------------------------------------------------------------
    cleaned["strength"] = pd.to_numeric(cleaned["strength"], errors="coerce")
    checks["strength outside [0, 1]"] = ~cleaned["strength"].between(0.0, 1.0)

    # 4. Observation time -------------------------------------------------------
    cleaned["observed_at"] = pd.to_datetime(cleaned["observed_at"], utc=True, errors="coerce")
    checks["unparsable observed_at"] = cleaned["observed_at"].isna()

    bad = pd.Series(False, index=cleaned.index)
    for label, mask in checks.items():
        n = int(mask.sum())
        if n:
            errors.append(f"Warning: {n} signal row(s) with {label} will be dropped.")
        bad |= mask
    cleaned = cleaned[~bad]

    # 5. Row count --------------------------------------------------------------
    if len(cleaned) == 0:
        errors.append("No valid signals remain after cleaning.")
        return False, errors, pd.DataFrame()
    if len(cleaned) > MAX_ROWS_SOFT_LIMIT:
        errors.append(f"Warning: {len(cleaned)} signals in one batch; consider splitting it.")

    cleaned = cleaned.sort_values(["observed_at", "user_a", "user_b"]).reset_index(drop=True)
    return _is_valid(errors), errors, cleaned


def validate_accounts(df: pd.DataFrame) -> Tuple[bool, List[str], pd.DataFrame]:
    """Validate and clean account profiles for spam detection.

    Duplicate ``user_id`` rows keep the last occurrence.  Negative message
    counts and unparsable creation times are hard errors; a KYC progress
    outside [0, 1] is clipped.
    """
    errors: List[str] = []

    # 1. Required columns -------------------------------------------------------
    missing = set(ACCOUNT_COLUMNS) - set(df.columns)
    if missing:
        errors.append(f"Missing required columns: {', '.join(sorted(missing))}")
        return False, errors, pd.DataFrame()

    cleaned = df.copy()

    # 2. Ids --------------------------------------------------------------------
    cleaned["user_id"] = cleaned["user_id"].fillna("").astype(str).str.strip()
    n_empty = int((cleaned["user_id"] == "").sum())
    if n_empty:
        errors.append(f"Column 'user_id' has {n_empty} empty/null value(s).")

    dup_count = int(cleaned["user_id"].duplicated().sum())
    if dup_count:
        errors.append(f"Warning: {dup_count} duplicate user_id row(s); keeping the last.")
        cleaned = cleaned.drop_duplicates(subset="user_id", keep="last")

    # 3. Creation time ----------------------------------------------------------
    cleaned["created_at"] = pd.to_datetime(cleaned["created_at"], utc=True, errors="coerce")
    n_bad_ts = int(cleaned["created_at"].isna().sum())
    if n_bad_ts:
        errors.append(f"Column 'created_at' has {n_bad_ts} unparsable value(s).")

    # 4. Counters ---------------------------------------------------------------
    for col in ("outbound_messages", "inbound_replies"):
        cleaned[col] = pd.to_numeric(cleaned[col], errors="coerce").fillna(0)
        n_neg = int((cleaned[col] < 0).sum())
        if n_neg:
            errors.append(f"Column '{col}' has {n_neg} negative value(s).")
        cleaned[col] = cleaned[col].astype("int64")

    # 5. KYC progress -----------------------------------------------------------
    cleaned["kyc_progress"] = pd.to_numeric(cleaned["kyc_progress"], errors="coerce").fillna(0.0)
    n_out = int((~cleaned["kyc_progress"].between(0.0, 1.0)).sum())
    if n_out:
        errors.append(f"Warning: {n_out} kyc_progress value(s) outside [0, 1] were clipped.")
        cleaned["kyc_progress"] = cleaned["kyc_progress"].clip(0.0, 1.0)

    cleaned["bio"] = cleaned["bio"].fillna("").astype(str)

    if len(cleaned) == 0:
        errors.append("No account profiles remain after cleaning.")
        return False, errors, pd.DataFrame()

    is_valid = _is_valid(errors)
    if is_valid:
        cleaned = cleaned.sort_values(["created_at", "user_id"]).reset_index(drop=True)
    return is_valid, errors, cleaned


def quick_stats(signals: pd.DataFrame) -> dict:
    """Small summary of a *cleaned* signal batch."""
    accounts = set(signals["user_a"]) | set(signals["user_b"])
    return {
        "total_signals": len(signals),
        "unique_accounts": len(accounts),
        "by_edge_type": signals["edge_type"].value_counts().sort_index().to_dict(),
        "date_range": (str(signals["observed_at"].min()), str(signals["observed_at"].max())),
    }


# ── Internal helpers ─────────────────────────────────────────────────────────

def _is_valid(errors: List[str]) -> bool:
    return not any(e for e in errors if not e.startswith("Warning:"))
