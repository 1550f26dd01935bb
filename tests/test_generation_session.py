import threading

import pytest

from config import Config
from generation.prompts import build_system_prompt, build_user_prompt
from generation.session import GenerationSession, SamplingParams
from generation.stream import TokenStream
from shared.errors import SessionStateError
from shared.schemas import ArtworkMetadata

from fakes import BOS, EOS, IM_END, FakeLlama

MONA_LISA = ArtworkMetadata(title="Mona Lisa", author="Leonardo da Vinci", technique="Oil on poplar")


def _collect(session, question="Who painted it?", cancel_event=None):
    pieces = []
    ok = session.generate_streaming(question, pieces.append, cancel_event)
    return ok, "".join(pieces)


def test_full_call_sequence(make_session):
    session = make_session(reply="Leonardo painted it.", decode=False)
    session.set_artwork(MONA_LISA)
    assert session.decode_system_prompt()

    ok, answer = _collect(session)

    assert ok is True
    assert answer == "Leonardo painted it."
    assert session.last_stop_reason == "eos"
    assert session.stats.total_tokens == len("Leonardo painted it.")
    assert session.stats.tokens_per_second >= 0.0

    session.close_session()
    assert not session.is_session_active
    session.unload_model()
    assert not session.is_model_loaded


def test_model_kwargs_and_stop_tokens(make_session):
    session = make_session(init=False)
    llm = session._llm
    assert llm.kwargs["n_ctx"] == 2048
    assert llm.kwargs["seed"] == 7
    assert llm.kwargs["verbose"] is False
    assert session._stop_tokens == {EOS, IM_END}


def test_load_model_missing_file(tmp_path):
    session = GenerationSession(llama_factory=FakeLlama)
    assert session.load_model(str(tmp_path / "missing.gguf")) is False
    assert not session.is_model_loaded
    assert session.init_session() is False


def test_load_model_rejected_by_runtime(model_file):
    def rejecting_factory(**kwargs):
        raise ValueError("Failed to load model from file")

    session = GenerationSession(llama_factory=rejecting_factory)
    assert session.load_model(model_file) is False
    assert not session.is_model_loaded


def test_generate_before_init_raises(make_session):
    session = make_session(init=False)
    with pytest.raises(SessionStateError):
        _collect(session)
    with pytest.raises(SessionStateError):
        session.decode_system_prompt()


def test_double_init_raises(make_session):
    session = make_session()
    with pytest.raises(SessionStateError):
        session.init_session()


def test_close_without_session_is_noop(make_session):
    session = make_session(init=False)
    session.close_session()
    session.close_session()
    assert session.init_session()


def test_system_prompt_required_before_generation(make_session):
    session = make_session(decode=False)
    assert not session.can_generate()
    with pytest.raises(SessionStateError):
        _collect(session)


def test_system_prompt_optional_when_not_required(make_session):
    session = make_session(reply="Hi.", decode=False, require_system_prompt=False)
    assert session.can_generate()

    ok, answer = _collect(session)

    assert ok and answer == "Hi."
    llm = session._llm
    # System and user turns were evaluated together from an empty cache
    system_tokens = llm.tokenize(build_system_prompt(None).encode("utf-8"), add_bos=True, special=True)
    assert llm.eval_calls[0][:len(system_tokens)] == system_tokens
    assert llm.saved_states == 0


def test_system_prompt_is_decoded_once_and_reused(make_session):
    session = make_session(reply="Yes.", decode=False)
    session.set_artwork(MONA_LISA)
    assert session.decode_system_prompt()
    assert session.decode_system_prompt()

    llm = session._llm
    assert llm.saved_states == 1
    system_tokens = llm.tokenize(build_system_prompt(MONA_LISA).encode("utf-8"), add_bos=True, special=True)
    assert llm.eval_calls == [system_tokens]

    _collect(session, "First question?")
    _collect(session, "Second question?")

    user_tokens = llm.tokenize(build_user_prompt("Second question?").encode("utf-8"), add_bos=False, special=True)
    assert llm.loaded_states == 2
    assert BOS not in user_tokens
    assert user_tokens in llm.eval_calls
    # The system prompt itself is never evaluated again
    assert llm.eval_calls.count(system_tokens) == 1


def test_changing_artwork_invalidates_cache(make_session):
    session = make_session(decode=False)
    session.set_artwork(MONA_LISA)
    assert session.decode_system_prompt()
    assert session.is_system_prompt_decoded

    session.set_artwork(ArtworkMetadata(title="The Night Watch"))

    assert not session.is_system_prompt_decoded
    assert session.artwork.title == "The Night Watch"
    assert session.decode_system_prompt()
    assert session._llm.saved_states == 2


def test_same_artwork_keeps_cache(make_session):
    session = make_session(decode=False)
    session.set_artwork(MONA_LISA)
    session.decode_system_prompt()
    session.set_artwork(ArtworkMetadata(**MONA_LISA.model_dump()))
    assert session.is_system_prompt_decoded


def test_max_tokens_stops_with_length(make_session):
    session = make_session(reply="abcdefghij", max_tokens=4)

    ok, answer = _collect(session)

    assert ok is True
    assert answer == "abcd"
    assert session.last_stop_reason == "length"


def test_context_window_full_stops(make_session):
    session = make_session(endless=True, max_tokens=10_000, n_ctx=200)

    ok, answer = _collect(session)

    assert ok is True
    assert session._llm.n_tokens == 200
    assert 0 < len(answer) < 200


def test_cancel_before_first_token(make_session):
    session = make_session(reply="never seen")
    cancel = threading.Event()
    cancel.set()

    ok, answer = _collect(session, cancel_event=cancel)

    assert ok is False
    assert answer == ""
    assert session.last_stop_reason == "cancelled"


def test_cancel_mid_generation(make_session):
    session = make_session(endless=True, max_tokens=10_000)
    cancel = threading.Event()
    pieces = []

    def on_token(piece):
        pieces.append(piece)
        if len(pieces) == 5:
            cancel.set()

    assert session.generate_streaming("Tell me everything", on_token, cancel) is False
    assert len(pieces) == 5
    assert session.last_stop_reason == "cancelled"
    assert not session.is_generating


def test_runtime_error_reports_failure(make_session):
    session = make_session(reply="partial answer", fail_on_sample=3)

    pieces = []
    assert session.generate_streaming("?", pieces.append) is False
    assert "".join(pieces) == "par"
    assert session.last_stop_reason == "error"
    # The session stays usable afterwards
    assert not session.is_generating


def test_multibyte_characters_are_not_split(make_session):
    session = make_session(reply="Café – 1503")

    ok, answer = _collect(session)

    assert ok
    assert answer == "Café – 1503"


def test_tokens_arrive_in_order(make_session):
    session = make_session(reply="one two three")
    pieces = []
    session.generate_streaming("?", pieces.append)
    assert pieces == list("one two three")


def test_same_seed_gives_same_answer(make_session):
    session = make_session(reply="Deterministic.")
    assert _collect(session) == _collect(session)


def test_concurrent_generation_is_rejected(make_session):
    session = make_session(endless=True, delay=0.01, max_tokens=10_000)
    stream = TokenStream(session, "Long question", timeout=30)
    try:
        assert session._llm.sample_started.wait(timeout=5)
        assert session.is_generating
        with pytest.raises(SessionStateError):
            _collect(session)
        with pytest.raises(SessionStateError):
            session.set_artwork(MONA_LISA)
    finally:
        stream.close()

    assert not session.is_generating
    assert session.last_stop_reason == "cancelled"


def test_from_config_sampling(monkeypatch):
    monkeypatch.setenv("DOCENT_TEMPERATURE", "0.2")
    monkeypatch.setenv("DOCENT_MAX_NEW_TOKENS", "64")
    cfg = Config()

    session = GenerationSession.from_config(cfg, llama_factory=FakeLlama)

    assert session.sampling == SamplingParams(
        temperature=0.2, top_k=cfg.top_k_sampling, top_p=cfg.top_p,
        repeat_penalty=cfg.repeat_penalty, max_tokens=64, seed=cfg.seed,
    )
    assert session.require_system_prompt is True
