"""
Tests for metadata filter expressions.
"""

import pytest

from clinsight.exceptions import FilterExpressionError
from clinsight.vector.filters import And, Comparison, filter_from_dict, parse_filter


class TestParseFilter:

    def test_blank_expression_means_no_filter(self):
        assert parse_filter(None) is None
        assert parse_filter("   ") is None

    def test_in_list(self):
        f = parse_filter("record_type in ['DIAGNOSIS', 'TREATMENT_PLAN']")
        assert f.matches({"record_type": "DIAGNOSIS"})
        assert f.matches({"record_type": "TREATMENT_PLAN"})
        assert not f.matches({"record_type": "LAB_RESULT"})
        assert not f.matches({})

    def test_equality_and_single_equals(self):
        assert parse_filter("document_type == 'CLINICAL_GUIDELINE'").matches(
            {"document_type": "CLINICAL_GUIDELINE"}
        )
        assert parse_filter('department = "cardiology"').matches({"department": "cardiology"})

    def test_equality_against_list_metadata_is_membership(self):
        f = parse_filter("conditions == 'I50'")
        assert f.matches({"conditions": ["E11", "I50"]})
        assert not f.matches({"conditions": ["E11"]})

    def test_boolean_operators_and_precedence(self):
        f = parse_filter("severity != 'LOW' && (risk_score >= 0.6 || department == 'cardiology')")
        assert f.matches({"severity": "HIGH", "risk_score": 0.7})
        assert f.matches({"severity": "HIGH", "risk_score": 0.1, "department": "cardiology"})
        assert not f.matches({"severity": "LOW", "risk_score": 0.9})
        assert not f.matches({"severity": "HIGH", "risk_score": 0.1})

    def test_word_operators(self):
        f = parse_filter("not (confidentiality in ['RESTRICTED', 'CONFIDENTIAL']) and active == true")
        assert f.matches({"confidentiality": "NORMAL", "active": True})
        assert not f.matches({"confidentiality": "RESTRICTED", "active": True})
        assert not f.matches({"confidentiality": "NORMAL", "active": False})

    def test_nin_matches_missing_values(self):
        f = parse_filter("severity nin ['LOW']")
        assert f.matches({})
        assert f.matches({"severity": "HIGH"})
        assert not f.matches({"severity": "LOW"})

    def test_ordering_never_matches_missing_or_incomparable(self):
        f = parse_filter("risk_score > 0.5")
        assert not f.matches({})
        assert not f.matches({"risk_score": "high"})
        assert f.matches({"risk_score": 0.75})

    def test_escaped_quotes(self):
        f = parse_filter(r"title == 'Crohn\'s disease'")
        assert f.matches({"title": "Crohn's disease"})

    @pytest.mark.parametrize("expression", [
        "record_type in",
        "record_type == ",
        "(severity == 'LOW'",
        "severity == 'LOW' extra",
        "== 'LOW'",
        "risk_score > 'high'",
        "severity @ 'LOW'",
    ])
    def test_malformed_expressions_raise(self, expression):
        with pytest.raises(FilterExpressionError):
            parse_filter(expression)

    def test_error_reports_position(self):
        with pytest.raises(FilterExpressionError) as exc:
            parse_filter("severity == 'LOW' extra")
        assert exc.value.position == 18


class TestToSql:

    def test_in_renders_jsonb_membership(self):
        params = ["[0.1]", "clinical"]
        sql = parse_filter("record_type in ['DIAGNOSIS', 'TREATMENT_PLAN']").to_sql(params)
        assert sql == (
            "EXISTS (SELECT 1 FROM jsonb_array_elements($3::jsonb) AS v(item) "
            "WHERE metadata->'record_type' = v.item OR metadata->'record_type' @> jsonb_build_array(v.item))"
        )
        assert params[2] == '["DIAGNOSIS", "TREATMENT_PLAN"]'

    def test_nin_negates_membership(self):
        params = []
        sql = parse_filter("severity nin ['LOW']").to_sql(params)
        assert sql.startswith("(NOT EXISTS (SELECT 1 FROM jsonb_array_elements($1::jsonb)")

    def test_equality_covers_scalars_and_arrays(self):
        params = []
        sql = parse_filter("icd_codes == 'I50.9'").to_sql(params)
        assert sql == (
            "COALESCE(metadata->'icd_codes' = $1::jsonb "
            "OR metadata->'icd_codes' @> jsonb_build_array($1::jsonb), false)"
        )
        assert params == ['"I50.9"']

    def test_not_equal_matches_missing_keys(self):
        params = []
        sql = parse_filter("risk_score != 0.5").to_sql(params)
        assert sql.startswith("(NOT COALESCE(metadata->'risk_score' = $1::jsonb")
        assert params == ["0.5"]

    def test_numeric_ordering_is_guarded_by_json_type(self):
        params = []
        sql = parse_filter("risk_score >= 0.6").to_sql(params)
        assert sql == (
            "(CASE WHEN jsonb_typeof(metadata->'risk_score') = 'number' "
            "THEN (metadata->>'risk_score')::double precision >= $1 ELSE false END)"
        )
        assert params == [0.6]

    def test_string_ordering_uses_code_point_collation(self):
        params = []
        sql = Comparison("department", "<", "m").to_sql(params)
        assert sql == (
            "(CASE WHEN jsonb_typeof(metadata->'department') = 'string' "
            "THEN metadata->>'department' COLLATE \"C\" < $1 ELSE false END)"
        )
        assert params == ["m"]

    def test_compound_numbers_parameters_in_order(self):
        params = []
        sql = parse_filter("a == 'x' && !(b != true)").to_sql(params)
        assert sql.startswith("(COALESCE(metadata->'a' = $1::jsonb")
        assert "(NOT (NOT COALESCE(metadata->'b' = $2::jsonb" in sql
        assert params == ['"x"', "true"]

    def test_unsafe_key_rejected(self):
        with pytest.raises(FilterExpressionError):
            Comparison("a'; drop table x; --", "==", "1").to_sql([])


class TestBackendParity:
    """Cases where a naive text comparison in SQL would disagree with matches()."""

    def test_list_metadata_membership(self):
        f = parse_filter("icd_codes in ['I50.9']")
        assert f.matches({"icd_codes": ["I50.9", "E11.9"]})
        sql = f.to_sql([])
        assert "metadata->'icd_codes' @> jsonb_build_array(v.item)" in sql
        assert "->>'icd_codes'" not in sql

    def test_numeric_not_equal_on_missing_key(self):
        f = parse_filter("risk_score != 0.5")
        assert f.matches({})
        # NULL from a missing key is coalesced before negation
        assert "NOT COALESCE(" in f.to_sql([])

    def test_numeric_equality_against_text_field(self):
        f = parse_filter("department == 5")
        assert not f.matches({"department": "cardiology"})
        sql = f.to_sql([])
        # jsonb equality, no cast that could fail on a text value
        assert "double precision" not in sql
        assert "metadata->'department' = $1::jsonb" in sql

    def test_ordering_against_wrong_type(self):
        f = parse_filter("risk_score > 0.5")
        assert not f.matches({"risk_score": "high"})
        assert "jsonb_typeof(metadata->'risk_score') = 'number'" in f.to_sql([])


class TestFilterFromDict:

    def test_empty(self):
        assert filter_from_dict({}) is None

    def test_conjunction_with_lists(self):
        f = filter_from_dict({"record_type": ["DIAGNOSIS"], "department": "cardiology"})
        assert isinstance(f, And)
        assert f.matches({"record_type": "DIAGNOSIS", "department": "cardiology"})
        assert not f.matches({"record_type": "DIAGNOSIS", "department": "oncology"})
