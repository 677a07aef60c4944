import json

import pytest

import content_policy
from content_policy import DEFAULT_POLICY, ContentPolicyError, active_policy, load_content_policy


@pytest.fixture(autouse=True)
def _reset_policy_cache():
    content_policy._cached_policy.cache_clear()
    yield
    content_policy._cached_policy.cache_clear()


def _write(tmp_path, payload):
    path = tmp_path / "policy.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_override_file_replaces_only_given_keys(tmp_path):
    path = _write(tmp_path, {"unsafe_terms": [" Dragon ", "ghost"], "duplicate_title_threshold": 0.75})

    policy = load_content_policy(path)

    assert policy.unsafe_terms == ("dragon", "ghost")
    assert policy.duplicate_title_threshold == 0.75
    assert policy.flat_openings == DEFAULT_POLICY.flat_openings
    assert policy.narrative_connectives == DEFAULT_POLICY.narrative_connectives


@pytest.mark.parametrize(
    "payload, message",
    [
        (["not", "an", "object"], "JSON object"),
        ({"unsafe_terms": "dragon"}, "JSON list"),
        ({"unsafe_terms": []}, "may not be empty"),
        ({"flat_openings": ["ok", ""]}, "entry #2"),
        ({"duplicate_title_threshold": 1.5}, "within (0, 1]"),
        ({"opening_window_chars": 0}, "positive"),
        ({"colour": "blue"}, "Unknown content policy keys: colour"),
    ],
)
def test_invalid_override_files_are_rejected(tmp_path, payload, message):
    path = _write(tmp_path, payload)

    with pytest.raises(ContentPolicyError) as excinfo:
        load_content_policy(path)

    assert message in str(excinfo.value)


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_content_policy(tmp_path / "nope.json")


def test_active_policy_follows_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("CONTENT_POLICY_PATH", raising=False)
    assert active_policy() is DEFAULT_POLICY

    path = _write(tmp_path, {"narrative_connectives": ["once upon a time"]})
    monkeypatch.setenv("CONTENT_POLICY_PATH", str(path))

    assert active_policy().narrative_connectives == ("once upon a time",)
