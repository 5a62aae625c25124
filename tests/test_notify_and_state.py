import json
from unittest.mock import MagicMock

import pytest
import requests

from shelf_life_pricer.errors import RunInProgressError
from shelf_life_pricer.notify import notify_summary, sign_b64
from shelf_life_pricer.state import RunState


def _notify(session, **kw):
    args = dict(
        endpoint_url="https://ops.example.com/hooks/pricing",
        shared_secret="s3cret",
        action="apply_discounts",
        shop="demo.myshopify.com",
        run_id="2025-03-01T00:00:00+00:00",
        summary={"success": True, "errors": []},
        session=session,
        sleep=lambda s: None,
    )
    args.update(kw)
    return notify_summary(**args)


def test_notify_not_configured():
    session = MagicMock()
    assert _notify(session, endpoint_url=None) is False
    session.post.assert_not_called()


def test_notify_signs_body():
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=202, text="")

    assert _notify(session) is True

    kwargs = session.post.call_args.kwargs
    body = kwargs["data"]
    assert kwargs["headers"]["X-Signature"] == sign_b64("s3cret", body)
    payload = json.loads(body)
    assert payload["idempotency_key"].startswith("idem-")
    assert payload["has_failures"] is False


def test_notify_same_run_same_key():
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=200, text="")
    _notify(session)
    _notify(session)
    keys = [json.loads(c.kwargs["data"])["idempotency_key"] for c in session.post.call_args_list]
    assert keys[0] == keys[1]


def test_notify_retries_then_succeeds():
    session = MagicMock()
    session.post.side_effect = [
        requests.ConnectionError("reset"),
        MagicMock(status_code=503, text="busy"),
        MagicMock(status_code=409, text="dup"),
    ]
    assert _notify(session) is True
    assert session.post.call_count == 3


def test_notify_non_retryable():
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=401, text="bad signature")
    assert _notify(session) is False
    assert session.post.call_count == 1


def test_notify_gives_up():
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=500, text="down")
    assert _notify(session, max_retries=2) is False
    assert session.post.call_count == 2


def test_run_state_record_and_read(tmp_path):
    st = RunState(tmp_path / "state")
    assert st.last("sync") is None

    st.record("sync", "demo.myshopify.com", {"matchedCount": 3, "title": "產品"})

    doc = st.last("sync")
    assert doc["shop"] == "demo.myshopify.com"
    assert doc["summary"]["matchedCount"] == 3
    assert st.all_last()["sync"] == doc
    assert not list((tmp_path / "state").glob("*.tmp"))


def test_run_lock(tmp_path):
    st = RunState(tmp_path)
    with st.run_lock("demo.myshopify.com", "sync"):
        assert st.locked("demo.myshopify.com")
        with pytest.raises(RunInProgressError):
            with st.run_lock("demo.myshopify.com", "apply_discounts"):
                pass
        # other shops are independent
        with st.run_lock("other.myshopify.com", "sync"):
            pass
    assert not st.locked("demo.myshopify.com")


def test_run_lock_released_on_error(tmp_path):
    st = RunState(tmp_path)
    with pytest.raises(RuntimeError):
        with st.run_lock("demo.myshopify.com", "sync"):
            raise RuntimeError("pass failed")
    assert not st.locked("demo.myshopify.com")
