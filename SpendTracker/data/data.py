"""Data analytics API for expense records.

This module turns cached records into pandas DataFrames, filters them by period and
category, and summarizes spending per category.
"""
import datetime
import enum
import logging
from typing import List, Optional, Tuple

import pandas as pd

from ..core.records import DATE_FORMAT, Record

RECORD_COLUMNS = ['id', 'date', 'category', 'amount', 'comment']
TOTALS_COLUMNS = ['category', 'total', 'count']


class Period(enum.StrEnum):
    Day = 'day'
    Week = 'week'
    Month = 'month'
    All = 'all'


def records_to_frame(records: List[Record]) -> pd.DataFrame:
    """Convert records to a DataFrame with parsed dates and numeric amounts.

    Dates that cannot be parsed become ``NaT`` and are kept, so the frame index always
    matches the position of the record in ``records``.

    Args:
        records (list[Record]): The records to convert.

    Returns:
        pd.DataFrame: One row per record with the columns of :data:`RECORD_COLUMNS`.
    """
    if not records:
        return pd.DataFrame(columns=RECORD_COLUMNS)

    df = pd.DataFrame([r.to_dict() for r in records], columns=RECORD_COLUMNS)
    df['date'] = pd.to_datetime(df['date'], format=DATE_FORMAT, errors='coerce')
    df['amount'] = pd.to_numeric(df['amount'], errors='coerce').fillna(0.0)

    invalid = int(df['date'].isna().sum())
    if invalid:
        logging.debug(f'{invalid} records have no valid date.')
    return df


def period_bounds(period: Period, today: datetime.date) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """Return the half-open ``[start, end)`` range of a period containing ``today``.

    Weeks start on Monday.
    """
    day = pd.Timestamp(today)
    if period == Period.Day:
        return day, day + pd.Timedelta(days=1)
    if period == Period.Week:
        start = day - pd.Timedelta(days=day.weekday())
        return start, start + pd.Timedelta(days=7)
    if period == Period.Month:
        start = day.replace(day=1)
        return start, start + pd.offsets.MonthBegin(1)
    raise ValueError(f'Period "{period}" has no bounds.')


def filter_records(
        records: List[Record],
        period: Period = Period.All,
        category: Optional[str] = None,
        today: Optional[datetime.date] = None,
) -> List[Record]:
    """Select the records of a period and, optionally, of one category.

    Records without a valid date only pass the ``all`` period.

    Args:
        records (list[Record]): The records to filter.
        period (Period): The period containing ``today`` to keep.
        category (str, optional): Keep only this category when given.
        today (datetime.date, optional): The reference day. Defaults to the current date.

    Returns:
        list[Record]: The matching records in their original order.
    """
    period = Period(period)
    df = records_to_frame(records)
    if df.empty:
        return []

    mask = pd.Series(True, index=df.index)
    if period != Period.All:
        start, end = period_bounds(period, today or datetime.date.today())
        mask &= (df['date'] >= start) & (df['date'] < end)
    if category:
        mask &= df['category'] == category

    return [records[i] for i in df.index[mask]]


def category_totals(records: List[Record]) -> pd.DataFrame:
    """Sum amounts per category.

    Returns:
        pd.DataFrame: ``category``, ``total`` and ``count`` columns sorted by total, largest first.
    """
    df = records_to_frame(records)
    if df.empty:
        return pd.DataFrame(columns=TOTALS_COLUMNS)

    totals = (
        df.groupby('category')['amount']
        .agg(total='sum', count='count')
        .reset_index()
        .sort_values(by=['total', 'category'], ascending=[False, True])
        .reset_index(drop=True)
    )
    return totals[TOTALS_COLUMNS]


def total_amount(records: List[Record]) -> float:
    """Return the sum of all record amounts."""
    if not records:
        return 0.0
    return float(records_to_frame(records)['amount'].sum())
