from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import patch

from reconciliation.models import InconsistencyType, OrderLineItem
from reconciliation.services.consistency_service import (
    LineSummary,
    diff_line_items,
    list_open_inconsistencies,
    resolve_inconsistencies,
    verify_order_consistency,
)
from reconciliation.services.platform_provider import RemoteLineItem
from tests.db_support import make_session_factory


class DiffLineItemsTests(unittest.TestCase):
    def test_quantity_change_reports_mismatch_and_total(self) -> None:
        findings = diff_line_items([LineSummary('A', '', 'Remera', 2)], [LineSummary('A', '', 'Remera', 3)])

        self.assertEqual(
            [finding.type for finding in findings],
            [InconsistencyType.QUANTITY_MISMATCH, InconsistencyType.TOTAL_MISMATCH],
        )
        self.assertEqual(findings[0].detail['remote_quantity'], 3)
        self.assertEqual(findings[1].detail['difference'], 1)

    def test_missing_and_extra_items(self) -> None:
        findings = diff_line_items([LineSummary('A', '', 'Remera', 1)], [LineSummary('B', 'V1', 'Gorra', 1)])

        self.assertEqual(
            [finding.type for finding in findings],
            [InconsistencyType.MISSING, InconsistencyType.EXTRA],
        )

    def test_variants_are_distinct_lines(self) -> None:
        findings = diff_line_items(
            [LineSummary('A', 'S', 'Remera S', 1), LineSummary('A', 'M', 'Remera M', 1)],
            [LineSummary('A', 'S', 'Remera S', 1), LineSummary('A', 'M', 'Remera M', 1)],
        )
        self.assertEqual(findings, [])

    def test_repeated_remote_keys_are_summed(self) -> None:
        findings = diff_line_items(
            [LineSummary('A', '', 'Remera', 2)],
            [LineSummary('A', '', 'Remera', 1), LineSummary('A', '', 'Remera', 1)],
        )
        self.assertEqual(findings, [])


class VerifyOrderConsistencyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.db.add(OrderLineItem(order_number='1001', product_id='A', variant_id='', name='Remera', quantity=2))
        self.db.flush()

    def tearDown(self) -> None:
        self.db.close()

    def test_records_findings_and_replaces_previous_ones(self) -> None:
        remote = [RemoteLineItem('A', '', 'Remera', 3, Decimal('100'))]

        verify_order_consistency(self.db, '1001', remote)
        result = verify_order_consistency(self.db, '1001', remote)

        self.assertFalse(result.is_consistent)
        self.assertEqual(len(list_open_inconsistencies(self.db, '1001')), 2)

    def test_resolve_closes_open_findings(self) -> None:
        verify_order_consistency(self.db, '1001', [RemoteLineItem('A', '', 'Remera', 3, Decimal('100'))])

        self.assertEqual(resolve_inconsistencies(self.db, '1001'), 2)
        self.assertEqual(list_open_inconsistencies(self.db, '1001'), [])

    def test_storage_failure_is_reported_as_consistent(self) -> None:
        with patch('reconciliation.services.consistency_service._store_findings', side_effect=RuntimeError('db down')):
            result = verify_order_consistency(self.db, '1001', [RemoteLineItem('A', '', 'Remera', 5, Decimal('1'))])

        self.assertTrue(result.is_consistent)
        self.assertEqual(result.error, 'db down')


if __name__ == '__main__':
    unittest.main()
