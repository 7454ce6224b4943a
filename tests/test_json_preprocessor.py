"""Tests for CVSS v4.0 enum preprocessing."""

import io
import json

import pytest

from nvdsync.utils.json_preprocessor import JsonPreprocessor, is_cvss_v4_field, preprocess

FEED = """{
  "resultsPerPage": 1,
  "vulnerabilities": [
    {
      "cve": {
        "id": "CVE-2024-0001",
        "descriptions": [{"lang": "en", "value": "UNKNOWN"}],
        "metrics": {
          "cvssMetricV40": [
            {
              "cvssData": {
                "vulnerableSystemConfidentiality": "HIGH",
                "Safety": "SAFETY",
                "modifiedAttackVector": "UNKNOWN",
                "subsequentSystemImpact": "LOW",
                "providerUrgency": "UNKNOWN"
              }
            }
          ]
        }
      }
    }
  ]
}"""


@pytest.fixture
def preprocessor():
    return JsonPreprocessor()


class TestFieldHeuristic:

    @pytest.mark.parametrize("name", [
        "modifiedAttackVector", "subsequentSystemImpact", "exploitabilityScore",
        "ciaRequirement", "Safety", "cvssV4Data", "baseCvssv4Score",
    ])
    def test_matching_names(self, name):
        assert is_cvss_v4_field(name)

    @pytest.mark.parametrize("name", ["value", "providerUrgency", "cvssV31", "lang"])
    def test_non_matching_names(self, name):
        assert not is_cvss_v4_field(name)


class TestPreprocess:

    def test_rewrites_only_matching_fields(self, preprocessor):
        result = preprocessor.preprocess(FEED)
        data = json.loads(result)

        cvss = data["vulnerabilities"][0]["cve"]["metrics"]["cvssMetricV40"][0]["cvssData"]
        assert cvss["Safety"] == "HIGH"
        assert cvss["modifiedAttackVector"] == "NONE"
        assert cvss["subsequentSystemImpact"] == "LOW"
        assert cvss["providerUrgency"] == "UNKNOWN"
        assert data["vulnerabilities"][0]["cve"]["descriptions"][0]["value"] == "UNKNOWN"

    def test_untouched_bytes_are_preserved(self, preprocessor):
        result = preprocessor.preprocess(FEED)
        expected = (FEED.replace('"Safety": "SAFETY"', '"Safety": "HIGH"')
                    .replace('"modifiedAttackVector": "UNKNOWN"', '"modifiedAttackVector": "NONE"'))
        assert result == expected

    def test_bytes_in_bytes_out(self, preprocessor):
        result = preprocessor.preprocess(FEED.encode("utf-8"))
        assert isinstance(result, bytes)
        assert b'"Safety": "HIGH"' in result

    def test_no_problem_values_returns_same_object(self, preprocessor):
        payload = b'{"cvssData": {"modifiedAttackVector": "NETWORK"}}'
        assert preprocessor.preprocess(payload) is payload

    def test_problem_value_in_unrelated_field_returns_same_object(self, preprocessor):
        payload = '{"description": "UNKNOWN", "tags": ["SAFETY"]}'
        assert preprocessor.preprocess(payload) is payload

    def test_already_preprocessed_is_identity(self, preprocessor):
        once = preprocessor.preprocess(FEED)
        assert preprocessor.preprocess(once) is once

    @pytest.mark.parametrize("payload", [
        '{"Safety": "SAFETY"',
        '{"Safety": "SAFETY"} trailing',
        '{"Safety": "SAFETY",}',
        b'\xff\xfe{"Safety": "SAFETY"}',
    ])
    def test_invalid_payload_returned_unchanged(self, preprocessor, payload):
        assert preprocessor.preprocess(payload) is payload

    def test_empty_payload(self, preprocessor):
        assert preprocessor.preprocess("") == ""
        assert preprocessor.preprocess(b"") == b""

    def test_escaped_strings_and_numbers_survive(self, preprocessor):
        payload = '{"note": "a \\"quoted\\" \\u00e9", "score": -1.5e3, "ok": true, "n": null, "Safety": "SAFETY"}'
        result = preprocessor.preprocess(payload)
        assert result == payload.replace('"Safety": "SAFETY"', '"Safety": "HIGH"')

    def test_stats(self, preprocessor):
        preprocessor.preprocess(FEED)
        preprocessor.preprocess("{}")
        stats = preprocessor.get_stats()
        assert stats["processed"] == 2
        assert stats["modified"] == 1
        assert stats["replacements"] == 2

    def test_stream(self, preprocessor):
        out = preprocessor.preprocess_stream(io.BytesIO(FEED.encode("utf-8")))
        assert b'"modifiedAttackVector": "NONE"' in out.read()

    def test_module_level_helper(self):
        assert preprocess('{"ciaImpact": "UNKNOWN"}') == '{"ciaImpact": "NONE"}'
