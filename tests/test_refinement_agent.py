import json
import threading

import pytest

from ai_agents import RefinementAgent, SessionStore, StaticConfigProvider
from ai_agents.services.errors import ParseError, RunFailed, ValidationError
from ai_agents.services.models import (
    PHASE_QUESTIONING,
    PHASE_SUGGESTING,
    AppConfig,
    ModelParams,
    Suggestion,
)
from ai_agents.services.prompt_builder import (
    ACCEPTANCE_CRITERIA_MARKER,
    NO_SUGGESTIONS_ACCEPTED,
    USER_STORY_MARKER,
)

QUESTIONS = json.dumps(
    [
        {"role": "PM", "prompt": ["Which metric matters?"]},
        {"role": "Designer", "prompt": ["Mobile first?", "Dark mode?"]},
    ]
)
FOLLOW_UP = json.dumps([{"role": "PM", "prompt": ["Who is the buyer?"]}])
SUGGESTIONS = json.dumps(
    [
        {"role": "PM", "prompt": ["Track weekly usage."]},
        {"role": "Designer", "prompt": ["Show a progress ring.", "Add a sound cue."]},
    ]
)
FINAL = f"{USER_STORY_MARKER}\nAs a remote worker I want focus blocks.\n{ACCEPTANCE_CRITERIA_MARKER}\n1. Timer starts\n2. Stats shown\n"


class SwitchableConfig:
    def __init__(self, config):
        self.config = config
        self.loads = 0

    def load_config(self):
        self.loads += 1
        return self.config


@pytest.fixture
def agent(transport, app_config):
    return RefinementAgent(transport, config_provider=StaticConfigProvider(app_config))


@pytest.fixture
def started(agent, transport):
    transport.queue(QUESTIONS)
    return agent.start("As a user I want a timer", ["PM", "Designer"])


def test_start_returns_questions_for_each_role(agent, transport, started):
    assert started.phase == PHASE_QUESTIONING
    assert [q.role for q in started.questions] == ["PM", "Designer"]
    assert started.suggestions == []
    assert started.session_id.startswith("session-")
    assert agent.get_session(started.session_id).thread_id == "thread-1"

    opening = transport.user_messages("thread-1")[0]
    assert "Focus timer for remote teams." in opening
    assert '"As a user I want a timer"' in opening
    assert transport.turns == [ModelParams(temperature=0.3, max_tokens=512)]


def test_start_uses_request_model_params_when_given(agent, transport):
    params = ModelParams(temperature=0.9, max_tokens=2000, model="o3")
    transport.queue(QUESTIONS)

    session = agent.start("story", ["PM"], model_params=params)

    assert transport.turns == [params]
    assert session.request.model_params == params


@pytest.mark.parametrize(
    "story, roles, code",
    [("story", [], "no_roles"), ("story", ["  "], "no_roles"), ("   ", ["PM"], "empty_story")],
)
def test_start_rejects_invalid_input_before_touching_transport(agent, transport, story, roles, code):
    with pytest.raises(ValidationError) as excinfo:
        agent.start(story, roles)

    assert excinfo.value.code == code
    assert transport.threads == {}
    assert agent.store.count() == 0


def test_start_with_unparseable_reply_stores_nothing(agent, transport):
    transport.queue("I'd be glad to help! What does the product do?")

    with pytest.raises(ParseError) as excinfo:
        agent.start("story", ["PM"])

    assert "glad to help" in excinfo.value.raw
    assert agent.store.count() == 0


def test_start_propagates_transport_failure(agent, transport):
    transport.queue(RunFailed("failed"))

    with pytest.raises(RunFailed):
        agent.start("story", ["PM"])

    assert agent.store.count() == 0


def test_continue_records_answers_and_asks_again(agent, transport, started):
    transport.queue(FOLLOW_UP)
    answers = {
        "PM_Which metric matters?": "Daily focus minutes",
        "Designer_Mobile first?": "Yes",
        "Designer_Dark mode?": "Later",
    }

    session = agent.submit_answers_and_continue(started.session_id, answers, additional_info="Budget is small")

    assert session.phase == PHASE_QUESTIONING
    assert [q.prompt for q in session.questions] == [["Who is the buyer?"]]
    assert session.suggestions == []
    assert session.additional_info == "Budget is small"

    sent = transport.user_messages("thread-1")
    assert sent[1] == (
        'PM Answer to PM\'s question "Which metric matters?": Daily focus minutes\n'
        'PM Answer to Designer\'s question "Mobile first?": Yes\n'
        'PM Answer to Designer\'s question "Dark mode?": Later\n'
    )
    assert sent[2].startswith("Supplementary info:\nBudget is small")
    assert any("Daily focus minutes" in entry for entry in session.history)


def test_answers_survive_a_failed_turn(agent, transport, started):
    transport.queue("not json")

    with pytest.raises(ParseError):
        agent.submit_answers_and_continue(started.session_id, {"Designer_Mobile first?": "Yes", "Designer_Dark mode?": "No"})

    stored = agent.get_session(started.session_id)
    assert stored.phase == PHASE_QUESTIONING
    assert stored.questions[1].answer == "Yes\nNo"
    assert stored.questions[0].answer is None


def test_empty_answers_skip_the_transcript(agent, transport, started):
    transport.queue(FOLLOW_UP)

    agent.submit_answers_and_continue(started.session_id, {})

    sent = transport.user_messages("thread-1")
    assert len(sent) == 2
    assert "Format example:" in sent[1]


def test_get_suggestions_moves_to_suggesting(agent, transport, started):
    transport.queue(SUGGESTIONS)

    session = agent.submit_answers_and_get_suggestions(started.session_id, {"PM_Which metric matters?": "Retention"})

    assert session.phase == PHASE_SUGGESTING
    assert session.questions == []
    assert [s.role for s in session.suggestions] == ["PM", "Designer"]
    assert "Do not ask any further questions." in transport.user_messages("thread-1")[-1]


def test_submit_reloads_prompt_config(transport, app_config):
    provider = SwitchableConfig(app_config)
    agent = RefinementAgent(transport, config_provider=provider)
    transport.queue(QUESTIONS, FOLLOW_UP)
    session = agent.start("story", ["PM"])

    provider.config = AppConfig(
        product_context=app_config.product_context,
        role_prompts={"PM": "Think about pricing."},
        phase_prompts={"questioning": "Ask about money."},
        phase_format_examples={},
    )
    updated = agent.submit_answers_and_continue(session.session_id, {})

    assert provider.loads == 2
    assert "- PM: Think about pricing." in transport.user_messages("thread-1")[-1]
    assert updated.role_prompts == {"PM": "Think about pricing."}


def test_accept_suggestions_then_more_questions(agent, transport, started):
    transport.queue(SUGGESTIONS, FOLLOW_UP)
    agent.submit_answers_and_get_suggestions(started.session_id, {})

    session, accepted = agent.accept_suggestions(
        started.session_id,
        [{"role": "Designer", "prompt": ["Show a progress ring."]}],
        next_phase="questioning",
    )

    assert accepted == [Suggestion(role="Designer", prompt=["Show a progress ring."])]
    assert session.phase == PHASE_QUESTIONING
    assert session.suggestions == []
    assert session.questions[0].prompt == ["Who is the buyer?"]
    assert "- Designer: Show a progress ring." in transport.user_messages("thread-1")[-2]


def test_accept_nothing_tells_the_assistant_explicitly(agent, transport, started):
    transport.queue(SUGGESTIONS, SUGGESTIONS)
    agent.submit_answers_and_get_suggestions(started.session_id, {})

    session, accepted = agent.accept_suggestions(started.session_id, [], next_phase="suggesting")

    assert accepted == []
    assert session.phase == PHASE_SUGGESTING
    assert session.questions == []
    assert NO_SUGGESTIONS_ACCEPTED in transport.user_messages("thread-1")[-2]


def test_accept_uses_prompt_maps_stored_on_session(transport, app_config):
    provider = SwitchableConfig(app_config)
    agent = RefinementAgent(transport, config_provider=provider)
    transport.queue(QUESTIONS, FOLLOW_UP)
    session = agent.start("story", ["PM"])
    provider.config = AppConfig(role_prompts={"PM": "Changed."})

    agent.accept_suggestions(session.session_id, [], next_phase="questioning")

    assert provider.loads == 1
    assert "- PM: Clarify goals and metrics." in transport.user_messages("thread-1")[-1]


def test_invalid_accepted_item_is_rejected(agent, started):
    with pytest.raises(ValidationError) as excinfo:
        agent.accept_suggestions(started.session_id, ["not a suggestion"], next_phase="questioning")

    assert excinfo.value.code == "invalid_suggestion"


def test_finalize_returns_story_and_keeps_phase(agent, transport, started):
    transport.queue(FINAL)

    result = agent.finalize(started.session_id, current_phase="QUESTIONING", current_answers={"PM_Which metric matters?": "Streaks"})

    assert result.user_story == "As a remote worker I want focus blocks."
    assert result.acceptance_criteria == ["Timer starts", "Stats shown"]
    assert result.raw == FINAL
    assert result.to_dict()["ac"] == ["Timer starts", "Stats shown"]

    sent = transport.user_messages("thread-1")
    assert sent[1] == 'PM Answer to PM\'s question "Which metric matters?": Streaks\n'
    assert USER_STORY_MARKER in sent[2]

    stored = agent.get_session(started.session_id)
    assert stored.phase == PHASE_QUESTIONING
    assert [q.role for q in stored.questions] == ["PM", "Designer"]
    assert stored.history[-1] == "[FINALIZING] As a remote worker I want focus blocks."


def test_finalize_with_selected_suggestion_keys(agent, transport, started):
    transport.queue(SUGGESTIONS, FINAL)
    agent.submit_answers_and_get_suggestions(started.session_id, {})

    agent.finalize(
        started.session_id,
        current_phase="SUGGESTING",
        current_suggestion_keys=["Designer_Add a sound cue.", "Nobody_nothing"],
    )

    sent = transport.user_messages("thread-1")
    assert sent[-2] == "[Accepted suggestions]\n- Designer: Add a sound cue.\n"
    assert agent.get_session(started.session_id).phase == PHASE_SUGGESTING


def test_refinalize_with_modification_note(agent, transport, started):
    transport.queue(FINAL, "plain rewrite without markers")
    agent.finalize(started.session_id)

    result = agent.finalize(started.session_id, modification_note="Mention team leads")

    assert result.user_story == "plain rewrite without markers"
    assert result.acceptance_criteria == []
    sent = transport.user_messages("thread-1")
    assert sent[-2] == "[Modification request]\nMention team leads"
    stored = agent.get_session(started.session_id)
    assert stored.modification_suggestion == "Mention team leads"
    assert stored.phase == PHASE_QUESTIONING


def test_finalize_with_empty_reply_raises(agent, transport, started):
    transport.queue("   ")

    with pytest.raises(ParseError):
        agent.finalize(started.session_id)


@pytest.mark.parametrize(
    "call",
    [
        lambda a: a.submit_answers_and_continue("session-missing", {}),
        lambda a: a.submit_answers_and_get_suggestions("session-missing", {}),
        lambda a: a.accept_suggestions("session-missing", [], next_phase="questioning"),
        lambda a: a.finalize("session-missing"),
    ],
)
def test_unknown_session_is_rejected_without_ai_call(agent, transport, call):
    with pytest.raises(ValidationError) as excinfo:
        call(agent)

    assert excinfo.value.code == "session_not_found"
    assert transport.turns == []


def test_questions_and_suggestions_never_coexist(agent, transport, started):
    transport.queue(SUGGESTIONS, FOLLOW_UP, SUGGESTIONS)
    steps = [
        lambda: agent.submit_answers_and_get_suggestions(started.session_id, {}),
        lambda: agent.accept_suggestions(started.session_id, [], next_phase="questioning")[0],
        lambda: agent.submit_answers_and_get_suggestions(started.session_id, {}),
    ]

    for step in steps:
        session = step()
        assert not (session.questions and session.suggestions)


def test_sessions_share_a_store_but_not_threads(transport, app_config):
    store = SessionStore()
    agent = RefinementAgent(transport, store=store, config_provider=StaticConfigProvider(app_config))
    transport.queue(QUESTIONS, QUESTIONS)

    first = agent.start("one", ["PM"])
    second = agent.start("two", ["PM"])

    assert first.session_id != second.session_id
    assert first.thread_id != second.thread_id
    assert store.count() == 2


def test_slow_turn_on_one_session_does_not_block_another(agent, transport):
    transport.queue(QUESTIONS, QUESTIONS)
    first = agent.start("one", ["PM"])
    second = agent.start("two", ["PM"])
    gate = threading.Event()
    transport.gates[first.thread_id] = gate
    transport.queue(
        json.dumps([{"role": "PM", "prompt": ["Second session question"]}]),
        json.dumps([{"role": "PM", "prompt": ["First session question"]}]),
    )
    results = []
    worker = threading.Thread(target=lambda: results.append(agent.submit_answers_and_continue(first.session_id, {})))
    worker.start()

    try:
        other = agent.submit_answers_and_continue(second.session_id, {})

        assert other.questions[0].prompt == ["Second session question"]
        assert agent.get_session(first.session_id).questions[0].prompt == ["Which metric matters?"]
        assert worker.is_alive()
    finally:
        gate.set()
        worker.join(timeout=5)

    assert results[0].questions[0].prompt == ["First session question"]


def test_failed_turn_releases_the_session(agent, transport, started):
    transport.queue(RunFailed("failed"), FOLLOW_UP)

    with pytest.raises(RunFailed):
        agent.submit_answers_and_continue(started.session_id, {})
    session = agent.submit_answers_and_continue(started.session_id, {})

    assert session.questions[0].prompt == ["Who is the buyer?"]
