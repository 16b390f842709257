"""
Tests for registration and upline/downline lookups.
"""

from unittest.mock import patch

import pytest

from earnings.exceptions import ValidationError
from earnings.referral_graph import ReferralGraph
from models import User, ReferralEdge


class TestRegisterUser:

    def test_register_without_referrer(self, app):
        user = ReferralGraph.register_user("alice", "Alice W", "0712345678", "secret123")

        assert user.id is not None
        assert user.referrer_id is None
        assert user.phone == "254712345678"
        assert len(user.referral_code) == 8
        assert user.check_password("secret123")
        assert not user.is_activated

    def test_register_with_referral_code(self, make_user):
        referrer = make_user()
        user = ReferralGraph.register_user("bob", "Bob K", None, "secret123", referrer.referral_code.lower())

        assert user.referrer_id == referrer.id

    def test_invalid_referral_code_rejected(self, app):
        with pytest.raises(ValidationError):
            ReferralGraph.register_user("bob", "Bob K", None, "secret123", "NOPE1234")
        assert User.query.count() == 0

    def test_duplicate_username_rejected(self, make_user):
        make_user("carol")
        with pytest.raises(ValidationError):
            ReferralGraph.register_user("carol", "Carol M", None, "secret123")

    @pytest.mark.parametrize("username,full_name,phone,password", [
        ("", "No Name", None, "secret123"),
        ("dan", "", None, "secret123"),
        ("dan", "Dan O", None, "123"),
        ("dan", "Dan O", "0812", "secret123"),
    ])
    def test_invalid_input_rejected(self, app, username, full_name, phone, password):
        with pytest.raises(ValidationError):
            ReferralGraph.register_user(username, full_name, phone, password)

    def test_referral_code_collision_regenerates(self, make_user):
        taken = make_user()
        codes = iter([taken.referral_code, "FRESH001"])

        with patch("earnings.referral_graph.generate_referral_code", side_effect=lambda length=8: next(codes)):
            user = ReferralGraph.register_user("erin", "Erin N", None, "secret123")

        assert user.referral_code == "FRESH001"


class TestUplineDownline:

    def test_upline_two_levels(self, make_user):
        r2 = make_user()
        r1 = make_user(referrer=r2)
        user = make_user(referrer=r1)

        level_one, level_two = ReferralGraph.get_upline(user.id)
        assert level_one.id == r1.id
        assert level_two.id == r2.id

    def test_upline_stops_at_two_hops(self, make_user):
        r3 = make_user()
        r2 = make_user(referrer=r3)
        r1 = make_user(referrer=r2)
        user = make_user(referrer=r1)

        upline = ReferralGraph.get_upline(user.id)
        assert [u.id for u in upline] == [r1.id, r2.id]

    def test_upline_missing_levels_are_none(self, make_user):
        r1 = make_user()
        user = make_user(referrer=r1)

        assert ReferralGraph.get_upline(user.id) == (r1, None)
        assert ReferralGraph.get_upline(r1.id) == (None, None)

    def test_downline(self, make_user):
        root = make_user()
        a = make_user(referrer=root)
        b = make_user(referrer=root)
        c = make_user(referrer=a)

        downline = ReferralGraph.get_downline(root.id)
        assert {u.id for u in downline["direct"]} == {a.id, b.id}
        assert [u.id for u in downline["secondary"]] == [c.id]


class TestReferralStats:

    def test_stats_count_active_edges_and_earnings(self, db, make_user):
        root = make_user()
        a = make_user(referrer=root)
        make_user(referrer=root)
        db.session.add(ReferralEdge(referrer_id=root.id, referred_id=a.id, level=1, amount=300, is_active=True))
        db.session.commit()

        stats = ReferralGraph.referral_stats(root.id)
        assert stats["directReferrals"] == 2
        assert stats["activeDirectReferrals"] == 1
        assert stats["levelOneEarnings"] == 300
        assert stats["levelTwoEarnings"] == 0
        assert stats["referralLink"] == f"https://tuzo.test/auth?ref={root.referral_code}"
