"""
Tests for handing webhook settlement to the dispatcher.
"""

from unittest.mock import Mock, patch

import pytest

from earnings.dispatch import CallbackDispatcher
from earnings.reconciliation import PaymentReconciler
from models import User


@pytest.fixture
def async_mode(app):
    app.config["CALLBACK_DISPATCH_MODE"] = "async"


class TestDispatch:

    def test_sync_mode_runs_inline(self, app):
        job = Mock(return_value="done")

        assert CallbackDispatcher.dispatch(job, 1, 2) == "done"
        job.assert_called_once_with(1, 2)

    def test_async_without_gevent_patching_runs_inline(self, async_mode):
        calls = []

        def job(value):
            calls.append(value)
            return "done"

        with patch("earnings.dispatch.monkey.is_module_patched", return_value=False), \
                patch("earnings.dispatch.gevent.spawn") as spawn:
            result = CallbackDispatcher.dispatch(job, 7)

        assert result == "done"
        assert calls == [7]
        spawn.assert_not_called()

    def test_async_with_gevent_patching_spawns(self, app, async_mode):
        job = Mock()

        with patch("earnings.dispatch.monkey.is_module_patched", return_value=True), \
                patch("earnings.dispatch.gevent.spawn") as spawn:
            CallbackDispatcher.dispatch(job, 7)

        spawn.assert_called_once_with(CallbackDispatcher._run, app, job, 7)
        job.assert_not_called()

    def test_callback_settles_under_plain_server(self, db, async_mode, login, make_user, stk_payload):
        user = make_user()
        client = login(user)
        checkout_id = client.post("/api/user/activate", json={"amount": 500}).get_json()["checkoutRequestId"]

        with patch("earnings.dispatch.monkey.is_module_patched", return_value=False):
            resp = client.post("/api/mpesa/callback", json=stk_payload(checkout_id))

        assert resp.status_code == 200
        assert PaymentReconciler.get_status(user.id, checkout_id).status == "completed"
        assert db.session.get(User, user.id).is_activated
