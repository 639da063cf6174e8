import json

from nvr_agent.signaling.json_reader import JsonResponseReader


def _feed_bytewise(reader, payload):
    results = [reader.feed(payload[i:i + 1]) for i in range(len(payload))]
    return results


def test_complete_only_when_top_level_object_closes():
    payload = json.dumps({"janus": "success", "data": {"id": 42}}).encode()
    reader = JsonResponseReader()

    results = _feed_bytewise(reader, payload)

    assert results[-1] is True
    assert not any(results[:-1])
    assert json.loads(reader.text()) == {"janus": "success", "data": {"id": 42}}


def test_braces_inside_strings_are_ignored():
    response = {"janus": "success", "plugindata": {"data": {"description": "cam }{ \"quoted\" {"}}}
    payload = json.dumps(response).encode()
    reader = JsonResponseReader()

    results = _feed_bytewise(reader, payload)

    assert results.index(True) == len(payload) - 1
    assert json.loads(reader.text()) == response


def test_escaped_backslash_before_closing_quote():
    response = {"path": "C:\\dir\\", "n": 1}
    payload = json.dumps(response).encode()
    reader = JsonResponseReader()

    assert reader.feed(payload) is True
    assert json.loads(reader.text()) == response


def test_unbalanced_prefix_never_completes():
    payload = json.dumps({"a": {"b": [1, 2, {"c": "}"}]}}).encode()
    for cut in range(1, len(payload)):
        reader = JsonResponseReader()
        assert reader.feed(payload[:cut]) is False
        assert not reader.complete


def test_partial_text_available_after_incomplete_read():
    reader = JsonResponseReader()
    reader.feed(b'{"janus": "succ')
    assert reader.depth == 1
    assert reader.text() == '{"janus": "succ'


def test_leading_noise_and_trailing_bytes_are_dropped():
    reader = JsonResponseReader()
    assert reader.feed(b'\n  {"ok": true}\x00\x00') is True
    assert reader.text() == '{"ok": true}'
