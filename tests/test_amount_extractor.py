from __future__ import annotations

import unittest
from decimal import Decimal

from reconciliation.services.amount_extractor import amount_candidates, extract_amount, parse_amount_token


class AmountExtractorTests(unittest.TestCase):
    def test_parses_grouped_thousands_with_cents(self) -> None:
        self.assertEqual(parse_amount_token('$ 25.000,50'), Decimal('25000.50'))

    def test_prefers_keyword_amount_over_operation_number(self) -> None:
        text = (
            'Comprobante de transferencia\n'
            'Numero de operacion 123.456.789\n'
            'Importe $ 25.000,00\n'
        )
        self.assertEqual(extract_amount(text, min_amount=Decimal('1000')), Decimal('25000.00'))

    def test_ignores_amounts_below_minimum(self) -> None:
        text = 'Total $ 1.500 y comision $ 500'
        self.assertEqual(extract_amount(text, min_amount=Decimal('1000')), Decimal('1500'))
        self.assertIsNone(extract_amount('Total $ 1.500', min_amount=Decimal('2000')))

    def test_bare_digit_runs_are_not_amounts(self) -> None:
        self.assertEqual(amount_candidates('CBU 0170099220000067797370', min_amount=Decimal('1000')), [])

    def test_empty_text_has_no_amount(self) -> None:
        self.assertIsNone(extract_amount(None))
        self.assertIsNone(extract_amount(''))

    def test_amount_near_the_top_wins(self) -> None:
        text = 'Pago total $ 12.000 ' + 'x' * 200 + ' total $ 15.000'
        candidates = amount_candidates(text, min_amount=Decimal('1000'))
        self.assertEqual(len(candidates), 2)
        self.assertEqual(extract_amount(text, min_amount=Decimal('1000')), Decimal('12000'))


if __name__ == '__main__':
    unittest.main()
