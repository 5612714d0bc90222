"""Unit tests for the in-memory account and session store."""

import dataclasses
import json
import uuid
from datetime import timedelta

import pytest

from tripauth.storage.errors import ConstraintViolation, RecordNotFound, StaleRecord
from tripauth.storage.memory import MemoryStore
from tripauth.storage.models import Account, Session
from tripauth.storage.sealing import TokenSealer


def _account(email="ada@example.com", external_id="google-ada", **kwargs):
    return Account.new(external_id, email, kwargs.pop("first_name", "Ada"), "Lovelace", **kwargs)


def _session(account_id, now, **kwargs):
    return Session.new(
        account_id,
        kwargs.pop("access_token", f"access-{uuid.uuid4().hex}"),
        kwargs.pop("refresh_token", f"refresh-{uuid.uuid4().hex}"),
        kwargs.pop("expires_at", now + timedelta(hours=1)),
        now=now,
        **kwargs,
    )


class TestAccounts:
    def test_create_and_lookup(self, memory_store):
        account = memory_store.create_account(_account())
        assert memory_store.get_account(account.id).email == "ada@example.com"
        assert memory_store.get_account_by_external_id("google-ada").id == account.id
        assert memory_store.get_account_by_email("ADA@example.com").id == account.id

    def test_duplicate_external_id(self, memory_store):
        memory_store.create_account(_account())
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_account(_account(email="other@example.com"))
        assert excinfo.value.detail == {"field": "external_id"}

    def test_duplicate_email(self, memory_store):
        memory_store.create_account(_account())
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_account(_account(external_id="google-other"))
        assert excinfo.value.detail == {"field": "email"}

    def test_deactivated_accounts_are_hidden_and_release_identity(self, memory_store, clock):
        account = memory_store.create_account(_account())
        assert memory_store.deactivate_account(account.id, clock.now)
        assert memory_store.get_account(account.id) is None
        assert memory_store.get_account_by_external_id("google-ada") is None
        # uniqueness only binds active accounts
        memory_store.create_account(_account())

    def test_reactivation_respects_uniqueness(self, memory_store, clock):
        old = memory_store.create_account(_account())
        memory_store.deactivate_account(old.id, clock.now)
        memory_store.create_account(_account())

        revived = dataclasses.replace(memory_store.accounts[old.id])
        revived.activate(clock.now)
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.update_account(revived)
        assert excinfo.value.detail == {"field": "external_id"}

    def test_update_missing_account(self, memory_store):
        with pytest.raises(RecordNotFound):
            memory_store.update_account(_account())

    def test_returned_records_are_copies(self, memory_store):
        account = memory_store.create_account(_account())
        fetched = memory_store.get_account(account.id)
        fetched.bio = "mutated"
        assert memory_store.get_account(account.id).bio == ""


class TestSessions:
    def test_lookup_by_each_key(self, memory_store, clock):
        account = memory_store.create_account(_account())
        session = memory_store.create_session(_session(account.id, clock.now))
        assert memory_store.get_session(session.id).id == session.id
        assert memory_store.get_session_by_access_token(session.access_token).id == session.id
        assert memory_store.get_session_by_refresh_token(session.refresh_token).id == session.id

    def test_session_requires_existing_account(self, memory_store, clock):
        with pytest.raises(ConstraintViolation):
            memory_store.create_session(_session("ghost", clock.now))

    def test_tokens_are_unique(self, memory_store, clock):
        account = memory_store.create_account(_account())
        memory_store.create_session(_session(account.id, clock.now, access_token="shared"))
        with pytest.raises(ConstraintViolation):
            memory_store.create_session(_session(account.id, clock.now, access_token="shared"))

    def test_list_active_orders_by_creation_then_id(self, memory_store, clock):
        account = memory_store.create_account(_account())
        late = memory_store.create_session(_session(account.id, clock.now + timedelta(seconds=5)))
        ties = [memory_store.create_session(_session(account.id, clock.now)) for _ in range(3)]
        inactive = _session(account.id, clock.now - timedelta(seconds=5))
        inactive.deactivate(clock.now)
        memory_store.create_session(inactive)

        listed = memory_store.list_active_sessions(account.id)
        assert [s.id for s in listed] == sorted(s.id for s in ties) + [late.id]

    def test_count_excludes_expired_and_inactive(self, memory_store, clock):
        account = memory_store.create_account(_account())
        memory_store.create_session(_session(account.id, clock.now))
        memory_store.create_session(
            _session(account.id, clock.now, expires_at=clock.now - timedelta(seconds=1))
        )
        gone = _session(account.id, clock.now)
        gone.deactivate(clock.now)
        memory_store.create_session(gone)
        assert memory_store.count_active_sessions(account.id, clock.now) == 1

    def test_update_missing_session(self, memory_store, clock):
        with pytest.raises(RecordNotFound):
            memory_store.update_session(_session("acct", clock.now))

    def test_conditional_update_detects_rotation(self, memory_store, clock):
        account = memory_store.create_account(_account())
        session = memory_store.create_session(_session(account.id, clock.now))
        original_refresh = session.refresh_token

        winner = memory_store.get_session(session.id)
        winner.rotate_tokens("access-2", "refresh-2", clock.now + timedelta(hours=1), clock.now)
        memory_store.update_session(winner, expected_refresh_token=original_refresh)

        loser = memory_store.get_session(session.id)
        loser.rotate_tokens("access-3", "refresh-3", clock.now + timedelta(hours=1), clock.now)
        with pytest.raises(StaleRecord):
            memory_store.update_session(loser, expected_refresh_token=original_refresh)
        assert memory_store.get_session(session.id).refresh_token == "refresh-2"

    def test_rotate_requires_current_refresh_token(self, memory_store, clock):
        account = memory_store.create_account(_account())
        session = memory_store.create_session(_session(account.id, clock.now))
        later = clock.now + timedelta(minutes=1)
        memory_store.rotate_session_tokens(
            session.id,
            session.refresh_token,
            "access-2",
            "refresh-2",
            later + timedelta(hours=1),
            later,
        )
        stored = memory_store.get_session(session.id)
        assert (stored.access_token, stored.refresh_token) == ("access-2", "refresh-2")
        assert stored.last_used_at == later

        with pytest.raises(StaleRecord):
            memory_store.rotate_session_tokens(
                session.id, session.refresh_token, "access-3", "refresh-3", later, later
            )
        with pytest.raises(RecordNotFound):
            memory_store.rotate_session_tokens("ghost", "refresh-2", "a", "r", later, later)

    def test_rotate_refuses_inactive_session(self, memory_store, clock):
        account = memory_store.create_account(_account())
        session = memory_store.create_session(_session(account.id, clock.now))
        memory_store.deactivate_session(session.id, clock.now)
        with pytest.raises(StaleRecord):
            memory_store.rotate_session_tokens(
                session.id, session.refresh_token, "access-2", "refresh-2", clock.now, clock.now
            )
        stored = memory_store.get_session(session.id)
        assert not stored.is_active
        assert stored.refresh_token == session.refresh_token

    def test_touch_only_updates_last_used(self, memory_store, clock):
        account = memory_store.create_account(_account())
        session = memory_store.create_session(_session(account.id, clock.now))
        later = clock.now + timedelta(minutes=5)
        assert memory_store.touch_session(session.id, session.access_token, later)
        assert memory_store.get_session(session.id).last_used_at == later

    def test_touch_skips_rotated_or_inactive_sessions(self, memory_store, clock):
        account = memory_store.create_account(_account())
        session = memory_store.create_session(_session(account.id, clock.now))
        later = clock.now + timedelta(minutes=5)
        assert not memory_store.touch_session(session.id, "some-other-access", later)
        assert not memory_store.touch_session("ghost", session.access_token, later)
        memory_store.deactivate_session(session.id, clock.now)
        assert not memory_store.touch_session(session.id, session.access_token, later)
        stored = memory_store.get_session(session.id)
        assert not stored.is_active
        assert stored.last_used_at == clock.now

    def test_deactivate_session_is_idempotent(self, memory_store, clock):
        account = memory_store.create_account(_account())
        session = memory_store.create_session(_session(account.id, clock.now))
        later = clock.now + timedelta(minutes=5)
        assert memory_store.deactivate_session(session.id, clock.now)
        assert memory_store.deactivate_session(session.id, later)
        stored = memory_store.get_session(session.id)
        assert not stored.is_active
        assert stored.last_used_at == clock.now
        assert not memory_store.deactivate_session("ghost", later)

    def test_set_external_tokens_keeps_refresh_when_omitted(self, memory_store, clock):
        account = memory_store.create_account(_account())
        session = memory_store.create_session(
            _session(account.id, clock.now, external_refresh_token="1//google-refresh")
        )
        assert memory_store.set_external_tokens(
            session.id, session.access_token, "ya29.renewed", None, clock.now
        )
        stored = memory_store.get_session(session.id)
        assert stored.external_access_token == "ya29.renewed"
        assert stored.external_refresh_token == "1//google-refresh"
        assert not memory_store.set_external_tokens(
            session.id, "stale-access", "ya29.other", None, clock.now
        )

    def test_delete_session(self, memory_store, clock):
        account = memory_store.create_account(_account())
        session = memory_store.create_session(_session(account.id, clock.now))
        memory_store.delete_session(session.id)
        assert memory_store.get_session(session.id) is None
        with pytest.raises(RecordNotFound):
            memory_store.delete_session(session.id)

    def test_delete_account_sessions(self, memory_store, clock):
        account = memory_store.create_account(_account())
        other = memory_store.create_account(_account("bob@example.com", "google-bob"))
        for _ in range(2):
            memory_store.create_session(_session(account.id, clock.now))
        keep = memory_store.create_session(_session(other.id, clock.now))
        assert memory_store.delete_account_sessions(account.id) == 2
        assert memory_store.delete_account_sessions(account.id) == 0
        assert memory_store.get_session(keep.id) is not None

    def test_deactivate_expired_sessions(self, memory_store, clock):
        account = memory_store.create_account(_account())
        fresh = memory_store.create_session(_session(account.id, clock.now))
        stale = memory_store.create_session(
            _session(account.id, clock.now, expires_at=clock.now - timedelta(minutes=1))
        )
        assert memory_store.deactivate_expired_sessions(clock.now) == 1
        assert memory_store.get_session(fresh.id).is_active
        assert not memory_store.get_session(stale.id).is_active


class TestPersistence:
    def test_state_survives_restart(self, tmp_path, clock):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account(_account())
        session = store.create_session(_session(account.id, clock.now, ip_addr="198.51.100.4"))

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_session(session.id)
        assert restored.ip_addr == "198.51.100.4"
        assert restored.expires_at == session.expires_at
        assert reloaded.get_account(account.id).username == account.username

    def test_external_tokens_are_sealed_on_disk(self, tmp_path, clock):
        sealer = TokenSealer("sealing-key-material")
        store = MemoryStore(fs_root=str(tmp_path), sealer=sealer)
        account = store.create_account(_account())
        session = store.create_session(
            _session(
                account.id,
                clock.now,
                external_access_token="ya29.google-access",
                external_refresh_token="1//google-refresh",
            )
        )

        raw = (tmp_path / "state" / "auth_store.json").read_text()
        assert "ya29.google-access" not in raw
        assert "1//google-refresh" not in raw
        on_disk = json.loads(raw)["sessions"][0]
        assert sealer.unseal(on_disk["external_access_token"]) == "ya29.google-access"

        reloaded = MemoryStore(fs_root=str(tmp_path), sealer=sealer)
        assert reloaded.get_session(session.id).external_refresh_token == "1//google-refresh"

    def test_wrong_key_drops_external_tokens(self, tmp_path, clock):
        store = MemoryStore(fs_root=str(tmp_path), sealer=TokenSealer("key-one"))
        account = store.create_account(_account())
        session = store.create_session(
            _session(account.id, clock.now, external_access_token="ya29.google-access")
        )
        reloaded = MemoryStore(fs_root=str(tmp_path), sealer=TokenSealer("key-two"))
        assert reloaded.get_session(session.id).external_access_token is None
