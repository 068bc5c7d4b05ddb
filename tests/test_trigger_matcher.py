"""Tests for trigger keyword matching and the workflow registry."""
import pytest
from conftest import edge, node, record

from context.trigger_matcher import TriggerMatcher, match, normalize
from core.errors import GraphValidationError, WorkflowNotFoundError


class TestNormalize:
    def test_trim_and_lowercase(self):
        assert normalize("  HeLLo ") == "hello"

    def test_none(self):
        assert normalize(None) == ""


class TestMatch:
    @pytest.mark.parametrize("text", ["Hi", " hi ", "HI", "hi"])
    def test_case_and_whitespace_insensitive(self, compile_record, greeting_record, text):
        compiled = compile_record(greeting_record)
        assert match(text, [compiled]) is compiled

    def test_whole_message_only(self, compile_record, greeting_record):
        assert match("hi there", [compile_record(greeting_record)]) is None

    def test_comma_separated_keywords(self, compile_record, greeting_record):
        greeting_record["triggerKeyword"] = "hi, Hello ,hey"
        compiled = compile_record(greeting_record)
        assert match("hello", [compiled]) is compiled
        assert match("hey", [compiled]) is compiled

    def test_trigger_node_keywords(self, compile_record, greeting_record):
        greeting_record["nodes"][0]["data"] = {"keywords": ["start"]}
        compiled = compile_record(greeting_record)
        assert match("START", [compiled]) is compiled

    def test_bypassed_with_active_session(self, compile_record, greeting_record):
        assert match("hi", [compile_record(greeting_record)], has_active_session=True) is None

    def test_empty_text(self, compile_record, greeting_record):
        assert match("   ", [compile_record(greeting_record)]) is None

    def test_no_match(self, compile_record, greeting_record):
        assert match("bye", [compile_record(greeting_record)]) is None


class TestRegistry:
    @pytest.mark.asyncio
    async def test_publish_activates_new_version(self, registry, greeting_record):
        first = await registry.publish(greeting_record)
        second = await registry.publish(greeting_record)
        assert (first.version, second.version) == (1, 2)
        active = await registry.list_active()
        assert [(w.id, w.version) for w in active] == [("greeting", 2)]
        assert active[0].definition.is_active

    @pytest.mark.asyncio
    async def test_publish_without_activation(self, registry, greeting_record):
        await registry.publish(greeting_record, activate=False)
        assert await registry.list_active() == []
        compiled = await registry.activate("greeting")
        assert compiled.definition.activated_at is not None

    @pytest.mark.asyncio
    async def test_invalid_workflow_never_stored(self, registry, store, greeting_record):
        greeting_record["edges"].append(edge("hello", "ghost"))
        with pytest.raises(GraphValidationError):
            await registry.publish(greeting_record)
        assert await store.load("greeting") is None

    @pytest.mark.asyncio
    async def test_bad_payload_is_validation_error(self, registry, greeting_record):
        greeting_record["nodes"][1]["data"] = {"question": "Name?"}
        with pytest.raises(GraphValidationError) as exc:
            await registry.publish(greeting_record)
        assert any("invalid input data" in e for e in exc.value.errors)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("duration", [1e12, float("inf")])
    async def test_oversized_delay_rejected(self, registry, store, delay_record, duration):
        delay_record["nodes"][2]["data"]["duration"] = duration
        delay_record["nodes"][2]["data"]["unit"] = "hour"
        with pytest.raises(GraphValidationError) as exc:
            await registry.publish(delay_record)
        assert any("invalid delay data" in e for e in exc.value.errors)
        assert await store.load("delay") is None

    @pytest.mark.asyncio
    async def test_old_version_still_compiled(self, registry, greeting_record):
        await registry.publish(greeting_record)
        greeting_record["nodes"][2]["data"]["text"] = "Welcome {{name}}"
        await registry.publish(greeting_record)
        registry.clear_cache()
        v1 = await registry.get_compiled("greeting", 1)
        v2 = await registry.get_compiled("greeting", 2)
        assert v1.node("hello").data.text == "Hello {{name}}"
        assert v2.node("hello").data.text == "Welcome {{name}}"

    @pytest.mark.asyncio
    async def test_deactivate(self, registry, greeting_record):
        await registry.publish(greeting_record)
        await registry.deactivate("greeting")
        assert await registry.list_active() == []

    @pytest.mark.asyncio
    async def test_deactivate_unknown(self, registry):
        with pytest.raises(WorkflowNotFoundError):
            await registry.deactivate("nope")

    @pytest.mark.asyncio
    async def test_load_unknown_version(self, registry, greeting_record):
        await registry.publish(greeting_record)
        with pytest.raises(WorkflowNotFoundError):
            await registry.load("greeting", 9)

    @pytest.mark.asyncio
    async def test_default_timeout_applied(self, store, clock, greeting_record):
        from context.registry import WorkflowRegistry
        registry = WorkflowRegistry(store, clock=clock, default_timeout_minutes=30)
        compiled = await registry.publish(greeting_record)
        assert compiled.settings.session_timeout_minutes == 30

        greeting_record["settings"] = {"sessionTimeoutMinutes": 2}
        compiled = await registry.publish(greeting_record)
        assert compiled.settings.session_timeout_minutes == 2


class TestTriggerMatcher:
    @pytest.mark.asyncio
    async def test_find_active(self, registry, greeting_record, menu_record):
        await registry.publish(greeting_record)
        await registry.publish(menu_record)
        matcher = TriggerMatcher(registry)
        assert (await matcher.find(" Menu ", "c1")).id == "menu"
        assert (await matcher.find("hi", "c1")).id == "greeting"
        assert await matcher.find("unknown", "c1") is None

    @pytest.mark.asyncio
    async def test_most_recently_activated_wins(self, registry, clock, greeting_record):
        other = record("other-greeting", nodes=[
            node("t", "trigger"),
            node("m", "message", text="other"),
        ], edges=[edge("t", "m")], keywords="hi")

        await registry.publish(greeting_record)
        clock.advance(minutes=1)
        await registry.publish(other)
        matcher = TriggerMatcher(registry)
        assert (await matcher.find("hi")).id == "other-greeting"

        clock.advance(minutes=1)
        await registry.activate("greeting")
        assert (await matcher.find("hi")).id == "greeting"

    @pytest.mark.asyncio
    async def test_deactivated_not_matched(self, registry, greeting_record):
        await registry.publish(greeting_record)
        await registry.deactivate("greeting")
        assert await TriggerMatcher(registry).find("hi") is None
