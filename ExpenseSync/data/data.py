"""Tabular views of the local snapshot.

This module turns record lists into pandas DataFrames, computes the dashboard figures
(monthly income and expenses, totals and the balance) and formats amounts with babel.
"""
import datetime
import logging
from typing import Dict, List, Optional

import pandas as pd
from babel import Locale, UnknownLocaleError, numbers

from ..core.records import Record, ID_KEY, MODIFIED_KEY

DEFAULT_LOCALE = 'en_IN'


def frame(records: List[Record]) -> pd.DataFrame:
    """Build a DataFrame with one row per record.

    Columns are ``id``, every payload field present in any record and ``updatedAt``.
    Missing fields are NaN.

    Args:
        records (List[Record]): The records.

    Returns:
        pd.DataFrame: The table, in record order.
    """
    if not records:
        return pd.DataFrame(columns=[ID_KEY, MODIFIED_KEY])

    df = pd.DataFrame.from_records([r.to_dict() for r in records])
    if MODIFIED_KEY not in df.columns:
        df[MODIFIED_KEY] = None
    columns = [ID_KEY] + [c for c in df.columns if c not in (ID_KEY, MODIFIED_KEY)] + [MODIFIED_KEY]
    return df[columns]


def _conform_transactions(df: pd.DataFrame) -> pd.DataFrame:
    """Coerce the ``date``, ``amount`` and ``type`` columns used by the statistics.

    Rows with an unparsable amount count as zero. Rows with an unparsable date are kept
    but never fall in a month.
    """
    for col in ('date', 'amount', 'type'):
        if col not in df.columns:
            df[col] = None

    df['amount'] = pd.to_numeric(df['amount'], errors='coerce')
    invalid = int(df['amount'].isna().sum())
    if invalid:
        logging.warning(f'{invalid} transaction(s) have an invalid amount.')
    df['amount'] = df['amount'].fillna(0)

    df['date'] = pd.to_datetime(df['date'], errors='coerce', utc=True, format='mixed')
    df['type'] = df['type'].fillna('').astype(str)
    return df


def get_stats(transactions: List[Record], today: Optional[datetime.date] = None) -> Dict[str, float]:
    """Summarize income and expenses.

    Args:
        transactions (List[Record]): Transaction records with ``date``, ``amount`` and ``type`` fields.
        today (datetime.date, optional): Reference day for the monthly figures. Defaults to today.

    Returns:
        Dict[str, float]: ``monthly_income``, ``monthly_expenses``, ``total_income``,
        ``total_expenses`` and ``balance``.
    """
    today = today or datetime.date.today()
    stats = {
        'monthly_income': 0.0,
        'monthly_expenses': 0.0,
        'total_income': 0.0,
        'total_expenses': 0.0,
        'balance': 0.0,
    }
    if not transactions:
        return stats

    df = _conform_transactions(frame(transactions))
    this_month = (df['date'].dt.year == today.year) & (df['date'].dt.month == today.month)
    income = df['type'] == 'income'
    expense = df['type'] == 'expense'

    stats['monthly_income'] = float(df.loc[this_month & income, 'amount'].sum())
    stats['monthly_expenses'] = float(df.loc[this_month & expense, 'amount'].sum())
    stats['total_income'] = float(df.loc[income, 'amount'].sum())
    stats['total_expenses'] = float(df.loc[expense, 'amount'].sum())
    stats['balance'] = stats['total_income'] - stats['total_expenses']
    return stats


def format_amount(value: float, currency: Optional[str] = None, locale: str = DEFAULT_LOCALE) -> str:
    """
    Format an amount as a currency string.

    Args:
        value (float): The amount.
        currency (str, optional): ISO 4217 code. Defaults to the ``currency`` preference.
        locale (str): Locale used for grouping and symbol placement, e.g. 'en_IN'.

    Returns:
        str: The formatted amount, or the plain value if the locale is unknown.
    """
    if currency is None:
        from ..settings import lib
        currency = lib.settings['currency']
    try:
        return numbers.format_currency(value, currency=currency, locale=Locale.parse(locale))
    except (ValueError, UnknownLocaleError) as ex:
        logging.warning(f'Could not format {value} as {currency} in "{locale}": {ex}')
        return str(value)
