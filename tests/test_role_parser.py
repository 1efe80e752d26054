from __future__ import annotations

import unittest

from residuals_backend.models import RoleSplit, RoleType
from residuals_backend.role_parser import (
    equal_split,
    infer_role,
    parse_column_i,
    parse_keyword,
    parse_legacy,
    rescale,
    tokenize,
)


def _total(splits) -> float:
    return round(sum(s.percentage for s in splits), 2)


class TokenizerTests(unittest.TestCase):
    def test_token_kinds(self) -> None:
        kinds = [t.kind for t in tokenize("Agent: Tom 25%, (Partner 5.5 %)")]
        self.assertEqual(
            kinds,
            ["KEYWORD", "COLON", "WORD", "PCT", "SEP", "LPAREN", "KEYWORD", "PCT", "RPAREN"],
        )

    def test_keywords_are_word_bounded(self) -> None:
        kinds = [t.kind for t in tokenize("Reporting Associates")]
        self.assertEqual(kinds, ["WORD", "WORD"])

    def test_sales_manager_is_one_keyword(self) -> None:
        tokens = tokenize("Sales Manager: Al 10%")
        self.assertEqual(tokens[0].kind, "KEYWORD")
        self.assertEqual(tokens[0].text, "Sales Manager")


class KeywordPassTests(unittest.TestCase):
    def test_three_roles_total_one_hundred(self) -> None:
        splits = parse_column_i("Agent: Tom Brown 25%, Company: 15%, Partner: Jane Smith 60%")

        self.assertEqual(len(splits), 3)
        self.assertEqual(_total(splits), 100.0)
        by_role = {s.role_type: s for s in splits}
        self.assertEqual(by_role[RoleType.AGENT].user_name, "Tom Brown")
        self.assertEqual(by_role[RoleType.COMPANY].user_name, "Company")
        self.assertEqual(by_role[RoleType.PARTNER].percentage, 60.0)

    def test_parenthesised_role(self) -> None:
        splits = parse_column_i("Johnson & Associates (Partner 60%), Agent: Tom Brown 25%, Company: 15%")

        self.assertEqual(
            [(s.role_type, s.user_name, s.percentage) for s in splits],
            [
                (RoleType.PARTNER, "Johnson & Associates", 60.0),
                (RoleType.AGENT, "Tom Brown", 25.0),
                (RoleType.COMPANY, "Company", 15.0),
            ],
        )

    def test_percentages_in_parentheses(self) -> None:
        splits = parse_column_i("Agent: John Smith (50%) | Partner: Jane Doe (25%) | Company (25%)")

        self.assertEqual(
            [(s.role_type, s.user_name, s.percentage) for s in splits],
            [
                (RoleType.AGENT, "John Smith", 50.0),
                (RoleType.PARTNER, "Jane Doe", 25.0),
                (RoleType.COMPANY, "Company", 25.0),
            ],
        )

    def test_bare_keyword_needs_parentheses(self) -> None:
        self.assertEqual(parse_keyword("Company 25%"), [])
        splits = parse_keyword("Company (25%)")
        self.assertEqual([(s.user_name, s.percentage) for s in splits], [("Company", 100.0)])

    def test_eighty_percent_is_rescaled(self) -> None:
        splits = parse_column_i("Agent: Tom Brown 40%, Partner: Jane Smith 40%")
        self.assertEqual([s.percentage for s in splits], [50.0, 50.0])

    def test_duplicates_are_dropped(self) -> None:
        splits = parse_keyword("Agent: Tom 50%, agent: tom 50%")
        self.assertEqual(len(splits), 1)
        self.assertEqual(splits[0].percentage, 100.0)

    def test_out_of_range_percentages_are_dropped(self) -> None:
        splits = parse_keyword("Agent: Tom 150%, Partner: Jane 100%")
        self.assertEqual([(s.user_name, s.percentage) for s in splits], [("Jane", 100.0)])

    def test_abbreviations(self) -> None:
        splits = parse_keyword("Mgr: Ann Lee 10%, Assoc: Bankers Guild 10%, Agt: Bo 80%")
        self.assertEqual(
            [s.role_type for s in splits],
            [RoleType.SALES_MANAGER, RoleType.ASSOCIATION, RoleType.AGENT],
        )


class LegacyPassTests(unittest.TestCase):
    def test_roles_inferred_from_names(self) -> None:
        splits = parse_legacy("Acme Payments LLC 30%, Bob Smith 70%")
        self.assertEqual(
            [(s.role_type, s.user_name, s.percentage) for s in splits],
            [(RoleType.COMPANY, "Acme Payments LLC", 30.0), (RoleType.AGENT, "Bob Smith", 70.0)],
        )

    def test_role_word_becomes_context(self) -> None:
        splits = parse_legacy("Manager Bob Smith 20%, Tom Brown - 80%")
        self.assertEqual(splits[0].role_type, RoleType.SALES_MANAGER)
        self.assertEqual(splits[0].user_name, "Bob Smith")
        self.assertEqual(splits[1].role_type, RoleType.AGENT)

    def test_keyword_text_falls_back_to_legacy(self) -> None:
        splits = parse_column_i("Midwest Alliance 10%, Sue Park 90%")
        self.assertEqual(splits[0].role_type, RoleType.ASSOCIATION)
        self.assertEqual(_total(splits), 100.0)


class FallbackTests(unittest.TestCase):
    def test_bare_names_split_equally(self) -> None:
        splits = parse_column_i("Tom Brown and Jane Smith")
        self.assertEqual([(s.user_name, s.percentage) for s in splits], [("Tom Brown", 50.0), ("Jane Smith", 50.0)])

    def test_three_names_absorb_remainder(self) -> None:
        splits = equal_split(["Ann Lee", "Bo Chan", "Cy Dee"])
        self.assertEqual([s.percentage for s in splits], [33.34, 33.33, 33.33])

    def test_unparseable_is_empty(self) -> None:
        self.assertEqual(parse_column_i(""), [])
        self.assertEqual(parse_column_i("see notes"), [])
        self.assertEqual(parse_column_i("50%"), [])


class RescaleTests(unittest.TestCase):
    def test_remainder_goes_to_largest_share(self) -> None:
        splits = rescale([
            RoleSplit(RoleType.AGENT, "A", 30.0),
            RoleSplit(RoleType.PARTNER, "B", 30.0),
            RoleSplit(RoleType.COMPANY, "C", 30.0),
        ])
        self.assertEqual(_total(splits), 100.0)
        self.assertEqual(splits[0].percentage, 33.34)

    def test_exact_total_unchanged(self) -> None:
        splits = rescale([RoleSplit(RoleType.AGENT, "A", 70.0), RoleSplit(RoleType.PARTNER, "B", 30.0)])
        self.assertEqual([s.percentage for s in splits], [70.0, 30.0])


class InferRoleTests(unittest.TestCase):
    def test_rules(self) -> None:
        self.assertEqual(infer_role("Acme Corp"), RoleType.COMPANY)
        self.assertEqual(infer_role("Merchant Network"), RoleType.ASSOCIATION)
        self.assertEqual(infer_role("Al", "sales mgr Al 5%"), RoleType.SALES_MANAGER)
        self.assertEqual(infer_role("Al", "partner Al 5%"), RoleType.PARTNER)
        self.assertEqual(infer_role("Al"), RoleType.AGENT)


if __name__ == "__main__":
    unittest.main()
