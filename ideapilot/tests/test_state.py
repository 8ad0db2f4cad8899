"""Tests for state normalization, patch merging and the session store."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from ideapilot.schemas import ChatMessage, SessionState, StoreUserInfo
from ideapilot.state import DELETE, SessionStore, ensure_state_schema, merge_patch, public_state


def _msg(i: int, role: str = "user") -> ChatMessage:
    return ChatMessage(id=f"m{i}", role=role, content=f"message {i}", created_at="2025-01-01T00:00:00+00:00")


class TestMergePatch:
    def test_nested_mappings_merge(self):
        current = {"settings": {"language": "en", "admin_contact": {"name": "Ann", "email": "a@x.io"}}}
        merged = merge_patch(current, {"settings": {"admin_contact": {"email": "b@x.io"}}})
        assert merged["settings"]["language"] == "en"
        assert merged["settings"]["admin_contact"] == {"name": "Ann", "email": "b@x.io"}

    def test_lists_and_scalars_replace(self):
        merged = merge_patch({"ops": [1, 2], "mode": "plan"}, {"ops": [3], "mode": "act"})
        assert merged == {"ops": [3], "mode": "act"}

    def test_none_is_stored(self):
        assert merge_patch({"current_idea_id": "i1"}, {"current_idea_id": None}) == {"current_idea_id": None}

    def test_delete_removes_key(self):
        merged = merge_patch({"ideas": {"a": {"x": 1}, "b": {"x": 2}}}, {"ideas": {"a": DELETE}})
        assert merged == {"ideas": {"b": {"x": 2}}}

    def test_input_not_mutated(self):
        current = {"a": {"b": 1}}
        merge_patch(current, {"a": {"c": 2}})
        assert current == {"a": {"b": 1}}


class TestEnsureStateSchema:
    def test_empty_input_gets_defaults(self):
        state = ensure_state_schema(None, clock=lambda: "T")
        assert state.mode == "onboarding"
        assert state.settings.language == "en"
        assert state.created_at == "T"

    def test_invalid_mode_falls_back_to_onboarding(self):
        assert ensure_state_schema({"mode": "sleep"}).mode == "onboarding"

    def test_partial_settings_are_filled(self):
        state = ensure_state_schema({"mode": "plan", "settings": {"language": "", "current_user": "ann"}})
        assert state.mode == "plan"
        assert state.settings.language == "en"
        assert state.settings.operators == []
        assert state.settings.admin_contact.name == ""
        assert state.settings.current_user == "ann"

    def test_dangling_current_idea_is_cleared(self):
        assert ensure_state_schema({"current_idea_id": "ghost"}).current_idea_id is None

    def test_unrepairable_idea_raises(self):
        raw = {"ideas": {"i1": {"idea_id": "i1", "created_at": "T", "updated_at": "T", "checklist": {"vibes": {}}}}}
        with pytest.raises(ValidationError):
            ensure_state_schema(raw)

    def test_loaded_strength_is_rederived(self):
        item = {"score": 4, "evidence": [], "evidence_strength": 3}
        raw = {"ideas": {"i1": {"idea_id": "i1", "created_at": "T", "updated_at": "T",
                                "checklist": {"problem_clarity": item}}}}
        idea = ensure_state_schema(raw).ideas["i1"]
        assert idea.checklist["problem_clarity"].evidence_strength == 0
        assert idea.derived.potential_score == 11


class TestSessionStore:
    def test_first_load_creates_and_persists_default(self, store, factory):
        state = store.load()
        assert state.mode == "onboarding"
        again = SessionStore(factory, "s1").load()
        assert again.created_at == state.created_at

    def test_commit_touches_updated_at(self, store):
        state = store.load()
        saved = store.commit(state.model_copy(update={"mode": "plan"}))
        assert saved.updated_at > state.updated_at
        assert store.load().mode == "plan"

    def test_apply_merges_and_persists(self, store):
        store.apply({"settings": {"language": "de"}})
        state = store.load()
        assert state.settings.language == "de"
        assert state.settings.admin_contact.name == ""

    def test_invalid_patch_does_not_persist(self, store):
        store.load()
        with pytest.raises(ValidationError):
            store.apply({"mode": "sleep"})
        assert store.load().mode == "onboarding"

    def test_messages_keep_order(self, store):
        messages = [_msg(3), _msg(1, "assistant"), _msg(2)]
        store.save_messages(messages)
        assert [m.id for m in store.load_messages()] == ["m3", "m1", "m2"]

    def test_sessions_are_isolated(self, store, factory):
        other = SessionStore(factory, "s2")
        store.save_messages([_msg(1)])
        other.save_messages([_msg(1), _msg(2)])
        store.apply({"mode": "act"})
        assert len(store.load_messages()) == 1
        assert other.load().mode == "onboarding"

    def test_user_info_roundtrip(self, store):
        info = StoreUserInfo(user_id="u1", api_key="tok", email="ann@x.io", credits=12.5)
        state = store.store_user_info(info, store.load())
        assert state.credential.token == "tok"
        assert state.credential.profile.id == "u1"
        assert store.cached_user_info("u1").api_key == "tok"

        cleared = store.clear_user_info(state)
        assert cleared.credential is None
        assert store.cached_user_info("u1") is None
        assert store.load().credential is None

    def test_tasks(self, store):
        first = store.add_task("ping", cron="*/5 * * * *")
        store.add_task("pong", next_run_time="2025-03-01T00:00:00+00:00")
        assert [t.description for t in store.list_tasks()] == ["ping", "pong"]
        assert store.cancel_task(first.id) is True
        assert store.cancel_task(first.id) is False
        assert [t.description for t in store.list_tasks()] == ["pong"]


def test_public_state_hides_token():
    state = SessionState.model_validate({
        "credential": {"token": "secret", "profile": {"id": "u1"}},
    })
    out = public_state(state)
    assert "token" not in out["credential"]
    assert out["credential"]["profile"]["id"] == "u1"
