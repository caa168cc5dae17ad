from __future__ import annotations

RECORDING = "https://api.twilio.com/2010-04-01/Accounts/AC1/Recordings/RE1"


def reload(db, session_id):
    import store

    db.expire_all()
    return store.get_session(db, session_id)


def post_recording(api_request, session_id, call_status="in-progress", recording_url=RECORDING):
    data = {"CallStatus": call_status}
    if recording_url:
        data["RecordingUrl"] = recording_url
    return api_request("POST", "/sos/handle-recording", params={"session_id": session_id}, data=data)


def responder_messages(db, session_id):
    import store
    from models import Sender

    return [m for m in store.list_messages(db, session_id) if m.sender == Sender.RESPONDER]


# =====================================================================
# Recording handoff
# =====================================================================
def test_recording_after_call_completed_is_refused(app_ctx, api_request, live_session, db):
    import store
    from models import CallStatus, ProcessingStatus

    store.update_call_status(db, reload(db, live_session).call_sid, CallStatus.COMPLETED)
    app_ctx.transcriber.transcript = "hello?"

    res = post_recording(api_request, live_session, call_status="completed")

    assert res.status_code == 200
    assert "Call is not active. Cannot process recording." in res.text
    assert "<Hangup" in res.text
    assert app_ctx.transcriber.urls == []
    assert responder_messages(db, live_session) == []
    assert reload(db, live_session).responder_processing_status == ProcessingStatus.IDLE


def test_recording_before_call_answered_is_refused(app_ctx, api_request, create_sos, db):
    create_sos("s1")
    res = post_recording(api_request, "s1", call_status="ringing")
    assert "Call is not active" in res.text
    assert responder_messages(db, "s1") == []


def test_ai_guide_off_persists_transcript_and_waits(app_ctx, api_request, live_session, db):
    import store
    from models import Answered, ProcessingStatus, TurnState

    store.set_ai_guide(db, live_session, False)
    app_ctx.transcriber.transcript = "What is your name?"
    app_ctx.completion.reply = Answered(text="My name is Alice.")

    res = post_recording(api_request, live_session)

    assert "Waiting for user input." in res.text
    assert "<Pause" in res.text
    assert "/sos/check-response?session_id=live1" in res.text
    assert [m.message for m in responder_messages(db, live_session)] == ["What is your name?"]
    assert not any(kind == "reply" for kind, _ in app_ctx.completion.calls)
    session = reload(db, live_session)
    assert session.turn_state == TurnState.WAIT_FOR_USER
    assert session.responder_processing_status == ProcessingStatus.IDLE


def test_insufficient_context_reply_falls_back_to_wait(app_ctx, api_request, live_session, db):
    from models import InsufficientContext

    app_ctx.transcriber.transcript = "What is your name?"
    app_ctx.completion.reply = InsufficientContext()

    res = post_recording(api_request, live_session)

    assert "Waiting for user input." in res.text
    assert "<Record" not in res.text
    assert [m.message for m in responder_messages(db, live_session)] == ["What is your name?"]


def test_answered_reply_is_spoken_and_logged_as_ai(app_ctx, api_request, live_session, db):
    import store
    from models import Answered, ProcessingStatus, Sender, SourceType, TurnState

    app_ctx.transcriber.transcript = "How many intruders?"
    app_ctx.completion.reply = Answered(text="There is one intruder.")

    res = post_recording(api_request, live_session)

    assert "There is one intruder." in res.text
    assert "<Record" in res.text
    assert app_ctx.transcriber.urls == [RECORDING]

    question, context = [args for kind, args in app_ctx.completion.calls if kind == "reply"][0]
    assert question == "How many intruders?"
    assert "Someone is trying to break into my house" in context

    ai = [m for m in store.list_messages(db, live_session) if m.source_type == SourceType.AI]
    assert ai[-1].message == "There is one intruder."
    assert ai[-1].sender == Sender.USER
    assert ai[-1].sent_to_responder is True
    session = reload(db, live_session)
    assert session.turn_state == TurnState.RECORDING
    assert session.responder_processing_status == ProcessingStatus.IDLE


def test_transcription_failure_speaks_fallback(app_ctx, api_request, live_session, db):
    from models import ProcessingStatus
    from transcriber import RecordingNotReady

    app_ctx.transcriber.error = RecordingNotReady("Recording not ready after 3 retries")

    res = post_recording(api_request, live_session)

    assert res.status_code == 200
    assert "We could not process that." in res.text
    assert "<Redirect" in res.text
    assert responder_messages(db, live_session) == []
    assert reload(db, live_session).responder_processing_status == ProcessingStatus.IDLE


def test_missing_recording_url_speaks_fallback(api_request, live_session):
    res = post_recording(api_request, live_session, recording_url=None)
    assert "We could not process that." in res.text


def test_completion_failure_speaks_fallback(app_ctx, api_request, live_session, db):
    from completion import CompletionError
    from models import ProcessingStatus

    app_ctx.transcriber.transcript = "Where are you?"
    app_ctx.completion.reply_error = CompletionError("503 Service Unavailable")

    res = post_recording(api_request, live_session)

    assert "We could not process that." in res.text
    assert [m.message for m in responder_messages(db, live_session)] == ["Where are you?"]
    assert reload(db, live_session).responder_processing_status == ProcessingStatus.IDLE


# =====================================================================
# Wait-poll
# =====================================================================
def test_poll_speaks_victim_messages_oldest_first(app_ctx, api_request, live_session, db):
    api_request("POST", f"/sessions/{live_session}/messages", json={"message": "I'm in the kitchen"})
    api_request("POST", f"/sessions/{live_session}/messages", json={"message": "He's gone now"})

    first = api_request("POST", "/sos/check-response", params={"session_id": live_session})
    second = api_request("POST", "/sos/check-response", params={"session_id": live_session})
    third = api_request("POST", "/sos/check-response", params={"session_id": live_session})

    assert "in the kitchen" in first.text
    assert "<Record" in first.text
    assert "gone now" not in first.text
    assert "gone now" in second.text
    assert "No response yet. Please wait." in third.text
    assert "<Redirect" in third.text


def test_poll_marks_message_sent_and_queues_contextual_check(app_ctx, api_request, live_session, db):
    import store
    from database import OutboxEvent
    from models import OutboxKind, OutboxStatus, TurnState

    api_request("POST", f"/sessions/{live_session}/messages", json={"message": "My name is Alice"})
    api_request("POST", "/sos/check-response", params={"session_id": live_session})

    assert store.next_unsent_user_message(db, live_session) is None
    db.expire_all()
    contextual = db.query(OutboxEvent).filter(OutboxEvent.kind == OutboxKind.CONTEXTUAL).all()
    assert len(contextual) == 1
    # Delivered by the background kick; the fake verdict is unparseable so nothing is sent
    assert contextual[0].status == OutboxStatus.DELIVERED
    assert reload(db, live_session).turn_state == TurnState.RECORDING


def test_message_sent_flag_flips_at_most_once(app_ctx, live_session, db):
    import store
    from models import Sender, SourceType

    msg = store.add_message(db, live_session, Sender.USER, SourceType.USER, "Hello")

    assert store.mark_message_sent(db, msg.id) is True
    assert store.mark_message_sent(db, msg.id) is False


def test_poll_that_loses_the_claim_keeps_holding(app_ctx, api_request, live_session, db, monkeypatch):
    import store
    from models import Sender, SourceType

    msg = store.add_message(db, live_session, Sender.USER, SourceType.USER, "Hello")
    stale = store.next_unsent_user_message(db, live_session)
    # A concurrent poll speaks it first
    store.mark_message_sent(db, msg.id)
    monkeypatch.setattr(store, "next_unsent_user_message", lambda _db, _sid: stale)

    res = api_request("POST", "/sos/check-response", params={"session_id": live_session})

    assert "No response yet" in res.text
    assert "Hello" not in res.text


def test_poll_database_error_keeps_holding(app_ctx, api_request, live_session, db, monkeypatch):
    import store
    from models import Sender, SourceType
    from sqlalchemy.exc import OperationalError

    store.add_message(db, live_session, Sender.USER, SourceType.USER, "Hello")

    def locked(_db, _message_id):
        raise OperationalError("UPDATE sos_messages", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "mark_message_sent", locked)

    res = api_request("POST", "/sos/check-response", params={"session_id": live_session})

    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/xml")
    assert "Waiting for user input." in res.text
    assert "/sos/check-response?session_id=live1</Redirect>" in res.text
    assert "Hello" not in res.text
    # The message stays queued for the next poll
    assert store.next_unsent_user_message(db, live_session).message == "Hello"


def test_poll_without_session_id(api_request):
    res = api_request("POST", "/sos/check-response")
    assert "Missing session ID." in res.text
    assert "<Hangup" in res.text


def test_poll_after_call_ended_hangs_up(api_request, live_session, db):
    import store
    from models import CallStatus

    store.update_call_status(db, reload(db, live_session).call_sid, CallStatus.COMPLETED)
    api_request("POST", f"/sessions/{live_session}/messages", json={"message": "Still here"})

    res = api_request("POST", "/sos/check-response", params={"session_id": live_session})

    assert "This emergency call has ended." in res.text
    assert store.next_unsent_user_message(db, live_session) is not None


def test_poll_after_time_limit_ends_call(app_ctx, api_request, live_session, monkeypatch):
    monkeypatch.setattr(app_ctx.settings, "max_call_seconds", -1)
    res = api_request("POST", "/sos/check-response", params={"session_id": live_session})
    assert "maximum call time" in res.text
    assert "<Hangup" in res.text


# =====================================================================
# Status callbacks
# =====================================================================
def test_status_callbacks_only_move_forward(app_ctx, api_request, create_sos, db):
    from models import CallStatus, TurnState

    create_sos("s1")
    sid = reload(db, "s1").call_sid

    def report(status):
        res = api_request("POST", "/sos/call-status", data={"CallSid": sid, "CallStatus": status})
        assert res.status_code == 200
        assert res.text == "OK"

    report("ringing")
    assert reload(db, "s1").call_status == CallStatus.RINGING
    report("in-progress")
    report("ringing")
    assert reload(db, "s1").call_status == CallStatus.IN_PROGRESS
    report("completed")
    report("in-progress")
    session = reload(db, "s1")
    assert session.call_status == CallStatus.COMPLETED
    assert session.turn_state == TurnState.COMPLETED


def test_busy_maps_to_failed(api_request, create_sos, db):
    from models import CallStatus, TurnState

    create_sos("s1")
    sid = reload(db, "s1").call_sid
    api_request("POST", "/sos/call-status", data={"CallSid": sid, "CallStatus": "busy"})

    session = reload(db, "s1")
    assert session.call_status == CallStatus.FAILED
    assert session.turn_state == TurnState.FAILED


def test_status_for_unknown_call_is_ignored(api_request):
    res = api_request("POST", "/sos/call-status", data={"CallSid": "CAunknown", "CallStatus": "completed"})
    assert res.status_code == 200
    assert res.text == "OK"


def test_recording_state_survives_in_progress_report(app_ctx, api_request, live_session, db):
    from models import TurnState

    api_request("POST", "/sos/twiml-voice", params={"session_id": live_session})
    sid = reload(db, live_session).call_sid
    api_request("POST", "/sos/call-status", data={"CallSid": sid, "CallStatus": "in-progress"})

    assert reload(db, live_session).turn_state == TurnState.RECORDING


def test_applied_call_status_effects_only_move_forward(app_ctx, live_session, db):
    from models import CallStatus, SetCallStatus, Transition

    orchestrator = app_ctx.get_orchestrator()

    orchestrator.apply(db, live_session, Transition(effects=[SetCallStatus(status=CallStatus.FAILED)]))
    assert reload(db, live_session).call_status == CallStatus.FAILED

    orchestrator.apply(db, live_session, Transition(effects=[SetCallStatus(status=CallStatus.RINGING)]))
    assert reload(db, live_session).call_status == CallStatus.FAILED


# =====================================================================
# Hang-up
# =====================================================================
def test_hangup_terminates_live_call(app_ctx, api_request, live_session, db):
    import store
    from models import CallStatus, ProcessingStatus, Sender

    res = api_request("POST", "/sos/hangup", json={"session_id": live_session})

    assert res.status_code == 200
    assert res.json() == {"success": True, "message": "Call hung up successfully", "callStatus": "completed"}
    session = reload(db, live_session)
    assert app_ctx.telephony.hung_up == [session.call_sid]
    assert session.call_status == CallStatus.COMPLETED
    assert session.responder_processing_status == ProcessingStatus.IDLE
    system = [m for m in store.list_messages(db, live_session) if m.sender == Sender.SYSTEM]
    assert [m.message for m in system] == ["Emergency call ended by user"]


def test_hangup_on_completed_call_does_not_terminate_again(app_ctx, api_request, live_session, db):
    import store
    from models import CallStatus

    store.update_call_status(db, reload(db, live_session).call_sid, CallStatus.COMPLETED)

    res = api_request("POST", "/sos/hangup", json={"session_id": live_session})

    assert res.status_code == 200
    assert res.json()["callStatus"] == "completed"
    assert app_ctx.telephony.hung_up == []


def test_hangup_twice_terminates_once(app_ctx, api_request, live_session):
    api_request("POST", "/sos/hangup", json={"session_id": live_session})
    api_request("POST", "/sos/hangup", json={"session_id": live_session})
    assert len(app_ctx.telephony.hung_up) == 1


def test_hangup_validation_errors(app_ctx, api_request, create_sos):
    assert api_request("POST", "/sos/hangup", json={}).status_code == 400
    assert api_request("POST", "/sos/hangup", json={"session_id": "missing"}).status_code == 404

    app_ctx.telephony.fail_place = True
    create_sos("nocall")
    res = api_request("POST", "/sos/hangup", json={"session_id": "nocall"})
    assert res.status_code == 400
    assert res.json()["detail"] == "No active call found for this session"


def test_hangup_provider_error_returns_500(app_ctx, api_request, live_session, db):
    from models import CallStatus

    app_ctx.telephony.fail_hangup = True
    res = api_request("POST", "/sos/hangup", json={"session_id": live_session})

    assert res.status_code == 500
    assert reload(db, live_session).call_status == CallStatus.IN_PROGRESS
