"""Tests for the flow data model."""
import json
import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError

from models.schemas import (
    AwaitingKind, AwaitingState, ButtonData, ConditionOperator, DelayData, DelayUnit,
    DeliveryResult, DeliveryStatus, Edge, InboundMessage, InputData, MenuData,
    MessageData, Node, NodeType, OutboundAction, Session, SessionStatus,
    MAX_DELAY_SECONDS, TimerKind, TimerRecord, TimerStatus, TriggerData,
    WorkflowDefinition, split_keywords,
)


class TestSplitKeywords:
    def test_comma_string(self):
        assert split_keywords(" Hi, HELLO ,hey ") == ["hi", "hello", "hey"]

    def test_drops_empties_and_duplicates(self):
        assert split_keywords("hi,,hi, ,Hi") == ["hi"]

    def test_list_of_comma_strings(self):
        assert split_keywords(["hi,hello", "start"]) == ["hi", "hello", "start"]

    def test_none(self):
        assert split_keywords(None) == []


class TestNodePayloads:
    def test_payload_routed_by_type(self):
        n = Node.model_validate({"id": "n1", "type": "input",
                                 "data": {"question": "Name?", "variable": "name"}})
        assert isinstance(n.data, InputData)
        assert n.data.variable_name == "name"

    def test_unknown_keys_dropped(self):
        n = Node.model_validate({"id": "n1", "type": "message",
                                 "data": {"label": "Hi there", "color": "#fff", "onChange": None}})
        assert isinstance(n.data, MessageData)
        assert n.data.text == "Hi there"
        assert not hasattr(n.data, "color")

    def test_trigger_keyword_alias(self):
        n = Node.model_validate({"id": "t", "type": "trigger", "data": {"triggerKeyword": "Hi, Start"}})
        assert isinstance(n.data, TriggerData)
        assert n.data.keywords == ["hi", "start"]

    def test_missing_data_uses_defaults(self):
        n = Node.model_validate({"id": "l", "type": "loop"})
        assert n.data.count == 3

    def test_invalid_payload_names_type(self):
        with pytest.raises(ValidationError, match="invalid input data"):
            Node.model_validate({"id": "n1", "type": "input", "data": {"question": "Name?"}})

    def test_empty_variable_name_rejected(self):
        with pytest.raises(ValidationError):
            Node.model_validate({"id": "n1", "type": "input",
                                 "data": {"question": "Name?", "variable_name": "  "}})

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            Node.model_validate({"id": "n1", "type": "webhook", "data": {}})

    def test_button_needs_options(self):
        with pytest.raises(ValidationError):
            Node.model_validate({"id": "b", "type": "button", "data": {"label": "Pick", "options": []}})

    def test_menu_option_cap(self):
        with pytest.raises(ValidationError):
            Node.model_validate({"id": "m", "type": "menu",
                                 "data": {"options": [f"o{i}" for i in range(11)]}})

    def test_menu_button_alias(self):
        n = Node.model_validate({"id": "m", "type": "menu",
                                 "data": {"body": "Choose", "button": "Open", "options": ["a"]}})
        assert isinstance(n.data, MenuData)
        assert n.data.button_label == "Open"

    def test_condition_value_stringified(self):
        n = Node.model_validate({"id": "c", "type": "condition",
                                 "data": {"variable": "age", "operator": "gt", "value": 18}})
        assert n.data.value == "18"
        assert n.data.operator == ConditionOperator.GT

    def test_loop_count_bounds(self):
        with pytest.raises(ValidationError):
            Node.model_validate({"id": "l", "type": "loop", "data": {"count": 0}})
        with pytest.raises(ValidationError):
            Node.model_validate({"id": "l", "type": "loop", "data": {"count": 51}})

    def test_payload_is_frozen(self):
        data = ButtonData(label="Pick", options=["a"])
        with pytest.raises(ValidationError):
            data.label = "changed"


class TestDelayData:
    def test_units(self):
        assert DelayData(duration=30, unit="sec").seconds == 30
        assert DelayData(duration=2, unit="min").seconds == 120
        assert DelayData(duration=1, unit="hour").seconds == 3600

    def test_delay_time_alias(self):
        assert DelayData.model_validate({"delayTime": 7}).duration == 7

    def test_negative_rejected(self):
        with pytest.raises(ValidationError):
            DelayData(duration=-1, unit=DelayUnit.SEC)

    @pytest.mark.parametrize("duration", [float("inf"), float("nan"), "inf"])
    def test_non_finite_rejected(self, duration):
        with pytest.raises(ValidationError):
            DelayData(duration=duration, unit=DelayUnit.SEC)

    def test_upper_bound_applies_after_unit(self):
        assert DelayData(duration=366, unit="hour").seconds == 366 * 3600
        assert DelayData(duration=366 * 24, unit="hour").seconds == MAX_DELAY_SECONDS
        with pytest.raises(ValidationError, match="exceeds 366 days"):
            DelayData(duration=366 * 24 + 1, unit="hour")
        with pytest.raises(ValidationError):
            DelayData(duration=1e12, unit="hour")


class TestEdge:
    def test_editor_keys(self):
        e = Edge.model_validate({"id": "e1", "source": "a", "target": "b", "sourceHandle": "option-1"})
        assert e.source_node_id == "a"
        assert e.target_node_id == "b"
        assert e.source_handle == "option-1"

    def test_blank_handle_is_none(self):
        e = Edge.model_validate({"source": "a", "target": "b", "sourceHandle": "  "})
        assert e.source_handle is None
        assert e.id


class TestWorkflowDefinition:
    def test_from_record_with_json_strings(self):
        nodes = [{"id": "t", "type": "trigger", "data": {}},
                 {"id": "m", "type": "message", "data": {"text": "hey"}}]
        edges = [{"id": "e", "source": "t", "target": "m"}]
        wf = WorkflowDefinition.from_record({
            "id": "wf-1",
            "name": "Greeter",
            "nodes": json.dumps(nodes),
            "edges": json.dumps(edges),
            "triggerKeyword": "Hi, Hello",
            "isActive": True,
            "createdAt": "2026-01-01T00:00:00Z",
        })
        assert [n.id for n in wf.nodes] == ["t", "m"]
        assert wf.edges[0].target_node_id == "m"
        assert wf.trigger_keywords == ["hi", "hello"]
        assert wf.is_active is True
        assert wf.created_at == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_default_settings(self):
        wf = WorkflowDefinition(id="wf")
        assert wf.settings.session_timeout_minutes == 5
        assert wf.settings.reset_on_inactivity is True
        assert wf.name == "Untitled Agent"

    def test_settings_aliases(self):
        wf = WorkflowDefinition.model_validate(
            {"id": "wf", "settings": {"sessionTimeout": 0, "resetOnInactivity": False}})
        assert wf.settings.session_timeout_minutes == 0
        assert wf.settings.reset_on_inactivity is False

    def test_keyword_set_unions_trigger_node(self):
        wf = WorkflowDefinition.model_validate({
            "id": "wf",
            "triggerKeyword": "hi",
            "nodes": [{"id": "t", "type": "trigger", "data": {"keywords": ["Start"]}}],
        })
        assert wf.keyword_set() == {"hi", "start"}

    def test_outgoing_keeps_declaration_order(self):
        wf = WorkflowDefinition.model_validate({
            "id": "wf",
            "nodes": [{"id": "a", "type": "loop"}, {"id": "b", "type": "message"},
                      {"id": "c", "type": "message"}],
            "edges": [{"source": "a", "target": "c"}, {"source": "a", "target": "b"}],
        })
        assert [e.target_node_id for e in wf.outgoing("a")] == ["c", "b"]

    def test_round_trip_through_json_dump(self):
        wf = WorkflowDefinition.model_validate({
            "id": "wf",
            "nodes": [{"id": "t", "type": "trigger", "data": {"keywords": "hi"}},
                      {"id": "d", "type": "delay", "data": {"duration": 3, "unit": "min"}}],
        })
        again = WorkflowDefinition.model_validate(wf.model_dump(mode="json"))
        assert again.get_node("d").data.seconds == 180
        assert again.get_node("t").data.keywords == ["hi"]


class TestSession:
    def test_defaults(self):
        s = Session(contact_id="c1", workflow_id="wf", current_node_id="t")
        assert s.is_active
        assert s.awaiting.kind == AwaitingKind.NONE
        assert not s.awaiting.is_waiting
        assert s.revision == 0

    def test_message_window(self):
        s = Session(contact_id="c1", workflow_id="wf", current_node_id="t")
        for i in range(5):
            s.remember_message(f"m{i}", limit=3)
        assert s.recent_message_ids == ["m2", "m3", "m4"]
        assert s.has_seen_message("m4")
        assert not s.has_seen_message("m0")
        assert not s.has_seen_message(None)

    def test_awaiting_constructors(self):
        assert AwaitingState.for_input("n", "name").variable_name == "name"
        assert AwaitingState.for_choice("n", ["option-0"]).handles == ["option-0"]
        timer = AwaitingState.for_timer("n", "tid")
        assert timer.kind == AwaitingKind.TIMER and timer.is_waiting

    def test_stalled_is_not_active(self):
        s = Session(contact_id="c1", workflow_id="wf", current_node_id="t", status=SessionStatus.STALLED)
        assert not s.is_active


class TestTimerRecord:
    def _timer(self, **kwargs):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        return now, TimerRecord(id="t1", kind=TimerKind.DELAY, session_id="s", contact_id="c",
                                due_at=now, **kwargs)

    def test_pending_due_is_claimable(self):
        now, t = self._timer()
        assert t.is_claimable(now)
        assert not t.is_claimable(now - timedelta(seconds=1))

    def test_firing_claimable_only_after_lease(self):
        now, t = self._timer(status=TimerStatus.FIRING, lease_until=datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc))
        assert not t.is_claimable(now)
        assert t.is_claimable(now + timedelta(minutes=2))

    def test_fired_never_claimable(self):
        now, t = self._timer(status=TimerStatus.FIRED)
        assert not t.is_claimable(now + timedelta(days=1))


class TestGatewayModels:
    def test_action_content(self):
        a = OutboundAction(contact_id="c1", rendered_text="Pick", options=["a", "b"], button_label="Go")
        content = a.to_content()
        assert content.text == "Pick"
        assert content.options == ["a", "b"]
        assert content.action_id == a.id
        assert a.delivery_status == DeliveryStatus.PENDING

    def test_inbound_selection(self):
        assert InboundMessage(contact_id="c", selection="option-1").is_selection
        assert not InboundMessage(contact_id="c", text="hi").is_selection

    def test_delivery_result_ok(self):
        assert DeliveryResult(status=DeliveryStatus.SENT).ok
        assert not DeliveryResult(status=DeliveryStatus.FAILED, error="x").ok

    def test_node_type_values(self):
        assert {t.value for t in NodeType} == {
            "trigger", "message", "input", "button", "menu", "condition", "loop", "delay",
        }
