import pytest

from backend.app.ai.json_text import ModelOutputError, parse_model_json, sanitize_model_output


def test_fenced_json_block_is_extracted_from_prose():
    out = 'Here is the invoice you asked for:\n```json\n{"invoiceNo": "INV-7", "items": []}\n```\nLet me know!'
    assert sanitize_model_output(out) == '{"invoiceNo": "INV-7", "items": []}'
    assert parse_model_json(out) == {"invoiceNo": "INV-7", "items": []}


def test_unlabelled_fence_is_extracted():
    assert parse_model_json('```\n{"a": 1}\n```') == {"a": 1}


def test_object_span_wins_without_a_fence():
    out = 'Sure. {"invoiceNo": "A1", "totals": {"net_amount": 56}} Hope this helps.'
    assert parse_model_json(out) == {"invoiceNo": "A1", "totals": {"net_amount": 56}}


def test_array_span_used_when_there_is_no_object():
    assert parse_model_json("result: [1, 2, 3] done") == [1, 2, 3]


def test_plain_text_is_returned_trimmed():
    assert sanitize_model_output("   no json here  ") == "no json here"


def test_non_string_output_sanitizes_to_empty():
    assert sanitize_model_output(None) == ""
    assert sanitize_model_output({"already": "parsed"}) == ""


def test_empty_output_raises():
    with pytest.raises(ModelOutputError):
        parse_model_json("")


def test_truncated_json_raises_with_preview():
    with pytest.raises(ModelOutputError) as exc_info:
        parse_model_json('{"invoiceNo": "INV-7", "items": [{"qty": 1')
    assert "invalid JSON" in str(exc_info.value)
