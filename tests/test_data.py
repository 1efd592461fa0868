"""
Tests for SpendTracker.data.data.

Run:
    python -m unittest tests.test_data
"""
import datetime
import unittest

import pandas as pd

from SpendTracker.core.records import Record
from SpendTracker.data import data
from SpendTracker.data.data import Period

TODAY = datetime.date(2024, 5, 15)  # a Wednesday

RECORDS = [
    Record(id='1', date='2024-05-15', category='food', amount=10.0),
    Record(id='2', date='2024-05-13', category='transport', amount=2.5),
    Record(id='3', date='2024-05-12', category='food', amount=4.0),
    Record(id='4', date='2024-05-01', category='fun', amount=30.0),
    Record(id='5', date='2024-04-30', category='food', amount=7.0),
    Record(id='6', date='', category='food', amount=1.0),
]


class FrameTests(unittest.TestCase):

    def test_empty(self):
        df = data.records_to_frame([])
        self.assertTrue(df.empty)
        self.assertEqual(list(df.columns), data.RECORD_COLUMNS)

    def test_dates_are_parsed(self):
        df = data.records_to_frame(RECORDS)
        self.assertEqual(len(df), len(RECORDS))
        self.assertEqual(df.loc[0, 'date'], pd.Timestamp('2024-05-15'))
        self.assertTrue(pd.isna(df.loc[5, 'date']))


class PeriodTests(unittest.TestCase):

    def test_bounds(self):
        self.assertEqual(
            data.period_bounds(Period.Day, TODAY),
            (pd.Timestamp('2024-05-15'), pd.Timestamp('2024-05-16'))
        )
        self.assertEqual(
            data.period_bounds(Period.Week, TODAY),
            (pd.Timestamp('2024-05-13'), pd.Timestamp('2024-05-20'))
        )
        self.assertEqual(
            data.period_bounds(Period.Month, TODAY),
            (pd.Timestamp('2024-05-01'), pd.Timestamp('2024-06-01'))
        )
        with self.assertRaises(ValueError):
            data.period_bounds(Period.All, TODAY)

    def test_month_bounds_on_first_day(self):
        start, end = data.period_bounds(Period.Month, datetime.date(2024, 2, 1))
        self.assertEqual((start, end), (pd.Timestamp('2024-02-01'), pd.Timestamp('2024-03-01')))

    def test_filter_by_period(self):
        def ids(period):
            return [r.id for r in data.filter_records(RECORDS, period, today=TODAY)]

        self.assertEqual(ids(Period.Day), ['1'])
        self.assertEqual(ids(Period.Week), ['1', '2'])
        self.assertEqual(ids(Period.Month), ['1', '2', '3', '4'])
        self.assertEqual(ids(Period.All), ['1', '2', '3', '4', '5', '6'])
        self.assertEqual(ids('week'), ['1', '2'])

    def test_filter_by_category(self):
        result = data.filter_records(RECORDS, Period.Month, category='food', today=TODAY)
        self.assertEqual([r.id for r in result], ['1', '3'])

    def test_filter_empty(self):
        self.assertEqual(data.filter_records([], Period.Day, today=TODAY), [])


class TotalsTests(unittest.TestCase):

    def test_category_totals(self):
        totals = data.category_totals(RECORDS)
        self.assertEqual(list(totals.columns), data.TOTALS_COLUMNS)
        self.assertEqual(list(totals['category']), ['fun', 'food', 'transport'])
        self.assertEqual(list(totals['total']), [30.0, 22.0, 2.5])
        self.assertEqual(list(totals['count']), [1, 4, 1])

    def test_ties_sorted_by_name(self):
        records = [
            Record(id='1', date='2024-05-15', category='b', amount=5.0),
            Record(id='2', date='2024-05-15', category='a', amount=5.0),
        ]
        self.assertEqual(list(data.category_totals(records)['category']), ['a', 'b'])

    def test_empty_totals(self):
        totals = data.category_totals([])
        self.assertTrue(totals.empty)
        self.assertEqual(list(totals.columns), data.TOTALS_COLUMNS)

    def test_total_amount(self):
        self.assertEqual(data.total_amount(RECORDS), 54.5)
        self.assertEqual(data.total_amount([]), 0.0)
