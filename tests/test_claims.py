"""
test_claims.py
==============
Tests for the accept / decline / cancel race resolution.
Tests cover:
 - Exactly one winner among concurrent accepts
 - Idempotent accept links (no duplicate notifications)
 - Declines never block other vets
 - A case every vet declined stays OPEN until the expiry sweep
 - Cancellation and late accepts
 - The Lahore / cow walkthrough end to end
"""

import datetime
from concurrent.futures import ThreadPoolExecutor

from conftest import cow_case

from vet_dispatch.claims import ResponseCode
from vet_dispatch.models import (
    ActionKind, Case, CandidateStatus, CaseStatus, DeliveryStatus,
    DispatchCandidate, MessageKind, utcnow,
)


def _case(session_factory, case_id):
    db = session_factory()
    try:
        return db.get(Case, case_id)
    finally:
        db.close()


def _candidate_states(session_factory, case_id):
    db = session_factory()
    try:
        return {
            c.vet_id: c.status
            for c in db.query(DispatchCandidate).filter(DispatchCandidate.case_id == case_id)
        }
    finally:
        db.close()


# --------------------------------------------------------------------------
# TESTS
# --------------------------------------------------------------------------

def test_concurrent_accepts_have_exactly_one_winner(services, add_vet, tokens_for, session_factory):
    """
    ✅ Ten vets click accept at the same moment.
    Expected: one 'assigned', nine 'case_already_assigned', one ACCEPTED row.
    """
    vet_ids = [add_vet(f"Racer {i}") for i in range(10)]
    summary = services.coordinator.create_case(**cow_case())
    assert sorted(summary.notified_vet_ids) == sorted(vet_ids)

    tokens = [tokens_for(summary.case_id, v) for v in vet_ids]
    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda t: services.resolver.accept_via_token(t, case_id=summary.case_id), tokens))

    codes = [r.code for r in results]
    assert codes.count(ResponseCode.assigned) == 1
    assert codes.count(ResponseCode.case_already_assigned) == 9

    winner = next(r.vet_id for r in results if r.code == ResponseCode.assigned)
    case = _case(session_factory, summary.case_id)
    assert case.status == CaseStatus.assigned
    assert case.assigned_vet_id == winner

    states = _candidate_states(session_factory, summary.case_id)
    assert list(states.values()).count(CandidateStatus.accepted) == 1
    assert states[winner] == CandidateStatus.accepted
    assert all(s == CandidateStatus.lost for v, s in states.items() if v != winner)


def test_repeated_accept_is_idempotent(services, lahore_vets, tokens_for, sender):
    """
    ✅ The winner clicks the same accept link three times.
    Expected: 'assigned' once, then 'already_accepted', one confirmation e-mail.
    """
    v1 = lahore_vets[0]
    summary = services.coordinator.create_case(**cow_case())
    token = tokens_for(summary.case_id, v1)

    first = services.resolver.accept_via_token(token, case_id=summary.case_id)
    second = services.resolver.accept_via_token(token, case_id=summary.case_id)
    third = services.resolver.accept_via_token(token, case_id=summary.case_id)

    assert first.code == ResponseCode.assigned
    assert second.code == ResponseCode.already_accepted
    assert third.code == ResponseCode.already_accepted
    assert second.assigned_vet_id == v1

    assert services.delivery_log.count(
        case_id=summary.case_id, message_kind=MessageKind.acceptance_confirmation
    ) == 1
    assert len([m for m in sender.sent_to("v1@example.com") if m["subject"].startswith("✅")]) == 1


def test_concurrent_clicks_on_same_accept_link(services, lahore_vets, tokens_for):
    """
    ✅ A double-click sends the same token twice concurrently.
    Expected: one 'assigned' and the rest 'already_accepted'.
    """
    summary = services.coordinator.create_case(**cow_case())
    token = tokens_for(summary.case_id, lahore_vets[1])

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: services.resolver.accept_via_token(token), range(4)))

    codes = sorted(r.code.value for r in results)
    assert codes == ["already_accepted"] * 3 + ["assigned"]


def test_decline_does_not_block_others(services, lahore_vets, tokens_for, session_factory):
    """
    ✅ V1 declines; the case stays open for V2.
    Expected: 'declined', case OPEN, V2 can still win.
    """
    v1, v2, _ = lahore_vets
    summary = services.coordinator.create_case(**cow_case())

    declined = services.resolver.decline_via_token(
        tokens_for(summary.case_id, v1, ActionKind.decline), case_id=summary.case_id
    )
    assert declined.code == ResponseCode.declined
    assert _case(session_factory, summary.case_id).status == CaseStatus.open

    won = services.resolver.accept_via_token(tokens_for(summary.case_id, v2), case_id=summary.case_id)
    assert won.code == ResponseCode.assigned


def test_declined_vet_cannot_win_later(services, lahore_vets, tokens_for):
    """
    ✅ V1 declines, then clicks the accept link from the same e-mail.
    Expected: 'already_declined' and the case is not assigned.
    """
    v1 = lahore_vets[0]
    summary = services.coordinator.create_case(**cow_case())
    services.resolver.decline_via_token(tokens_for(summary.case_id, v1, ActionKind.decline))

    result = services.resolver.accept_via_token(tokens_for(summary.case_id, v1))
    assert result.code == ResponseCode.already_declined

    replay = services.resolver.decline_via_token(tokens_for(summary.case_id, v1, ActionKind.decline))
    assert replay.code == ResponseCode.already_declined


def test_all_declined_case_stays_open_until_sweep(make_services, lahore_vets, tokens_for, session_factory, sender):
    """
    ✅ Every notified vet declines.
    Expected: the case stays OPEN with nobody assigned and no operator mail;
    the expiry sweep then expires it and the operator is told once.
    """
    services = make_services(escalation_policy="notify_operator", operator_email="ops@example.com")
    summary = services.coordinator.create_case(**cow_case())

    for vet_id in lahore_vets:
        result = services.resolver.decline_via_token(tokens_for(summary.case_id, vet_id, ActionKind.decline))
        assert result.code == ResponseCode.declined

    case = _case(session_factory, summary.case_id)
    assert case.status == CaseStatus.open
    assert case.assigned_vet_id is None
    assert set(_candidate_states(session_factory, summary.case_id).values()) == {CandidateStatus.declined}
    assert sender.sent_to("ops@example.com") == []

    later = utcnow() + datetime.timedelta(days=1)
    assert services.coordinator.run_sweep(later).expired == [summary.case_id]
    assert _case(session_factory, summary.case_id).status == CaseStatus.expired
    assert len(sender.sent_to("ops@example.com")) == 1



def test_cancel_turns_accepts_into_already_lost(services, lahore_vets, tokens_for, session_factory):
    """
    ✅ The case is cancelled before anybody accepts.
    Expected: cancel True once, accepts answer 'already_lost', no assignment.
    """
    summary = services.coordinator.create_case(**cow_case())

    assert services.resolver.cancel_case(summary.case_id) is True
    assert services.resolver.cancel_case(summary.case_id) is False

    result = services.resolver.accept_via_token(tokens_for(summary.case_id, lahore_vets[0]))
    assert result.code == ResponseCode.already_lost

    case = _case(session_factory, summary.case_id)
    assert case.status == CaseStatus.cancelled
    assert case.assigned_vet_id is None
    assert set(_candidate_states(session_factory, summary.case_id).values()) == {CandidateStatus.lost}


def test_invalid_links(services, lahore_vets, tokens_for):
    """
    ✅ Garbage, empty and cross-wired tokens.
    Expected: 'invalid_link', never an exception.
    """
    summary = services.coordinator.create_case(**cow_case())
    accept_token = tokens_for(summary.case_id, lahore_vets[0])

    assert services.resolver.accept_via_token("garbage").code == ResponseCode.invalid_link
    assert services.resolver.accept_via_token("").code == ResponseCode.invalid_link
    # An accept token used on the decline link
    assert services.resolver.decline_via_token(accept_token).code == ResponseCode.invalid_link
    # Right token, wrong case in the URL
    assert services.resolver.accept_via_token(accept_token, case_id=summary.case_id + 99).code == ResponseCode.invalid_link

    # Still usable on the right link
    assert services.resolver.accept_via_token(accept_token, case_id=summary.case_id).code == ResponseCode.assigned


def test_fanout_after_claim_is_complete(add_vet, services, tokens_for):
    """
    ✅ Five vets notified, one declines, one accepts.
    Expected: 1 ACCEPTANCE_CONFIRMATION, 3 CASE_TAKEN, 1 OWNER_ASSIGNMENT row.
    """
    vet_ids = [add_vet(f"Vet {i}") for i in range(5)]
    summary = services.coordinator.create_case(**cow_case())
    log = services.delivery_log

    services.resolver.decline_via_token(tokens_for(summary.case_id, vet_ids[0], ActionKind.decline))
    services.resolver.accept_via_token(tokens_for(summary.case_id, vet_ids[1]))

    assert log.count(case_id=summary.case_id, message_kind=MessageKind.initial_notification) == 5
    assert log.count(case_id=summary.case_id, message_kind=MessageKind.acceptance_confirmation) == 1
    assert log.count(case_id=summary.case_id, message_kind=MessageKind.case_taken) == 3
    assert log.count(case_id=summary.case_id, message_kind=MessageKind.owner_assignment) == 1

    rows, _ = log.search(case_id=summary.case_id, message_kind=MessageKind.case_taken)
    assert sorted(r.vet_id for r in rows) == sorted(vet_ids[2:])
    assert log.count(case_id=summary.case_id, status=DeliveryStatus.pending) == 0


def test_lahore_cow_walkthrough(services, lahore_vets, tokens_for, sender, session_factory):
    """
    ✅ Case for a cow in Lahore; V1, V2, V3 notified; V2 accepts, then V1 and
       V3 click accept late, then V2 clicks again.
    Expected: V2 assigned, V1/V3 see 'case_already_assigned' and got one
    'Case Taken' e-mail each, V2's replay is 'already_accepted'.
    """
    v1, v2, v3 = lahore_vets
    summary = services.coordinator.create_case(**cow_case())
    assert summary.outcome == "dispatched"
    assert summary.notified_vet_ids == [v1, v2, v3]
    assert all(len(sender.sent_to(f"v{i}@example.com")) == 1 for i in (1, 2, 3))

    assert services.resolver.accept_via_token(tokens_for(summary.case_id, v2)).code == ResponseCode.assigned
    late1 = services.resolver.accept_via_token(tokens_for(summary.case_id, v1))
    late3 = services.resolver.accept_via_token(tokens_for(summary.case_id, v3))
    assert late1.code == ResponseCode.case_already_assigned
    assert late3.code == ResponseCode.case_already_assigned
    assert late1.assigned_vet_id == v2

    assert services.resolver.accept_via_token(tokens_for(summary.case_id, v2)).code == ResponseCode.already_accepted

    for address in ("v1@example.com", "v3@example.com"):
        taken = [m for m in sender.sent_to(address) if m["subject"].startswith("Case Taken")]
        assert len(taken) == 1
    owner_mail = sender.sent_to("owner@example.com")
    assert len(owner_mail) == 1
    assert "V2" in owner_mail[0]["text"]

    case = _case(session_factory, summary.case_id)
    assert (case.status, case.assigned_vet_id) == (CaseStatus.assigned, v2)


# --------------------------------------------------------------------------
# MIXED RACES
# --------------------------------------------------------------------------

def test_declines_racing_an_accept_never_get_case_taken(add_vet, services, tokens_for, session_factory):
    """
    ✅ Eight vets decline while a ninth accepts, all at the same moment.
    Expected: every vet told 'declined' stays DECLINED and gets no 'Case Taken'
    e-mail; the 'Case Taken' recipients are exactly the LOST candidates.
    """
    vet_ids = [add_vet(f"Decliner {i}") for i in range(8)]
    winner = add_vet("Accepter")
    bystander = add_vet("Bystander")
    summary = services.coordinator.create_case(**cow_case())
    case_id = summary.case_id

    def respond(vet_id):
        if vet_id == winner:
            return vet_id, services.resolver.accept_via_token(tokens_for(case_id, vet_id)).code
        return vet_id, services.resolver.decline_via_token(tokens_for(case_id, vet_id, ActionKind.decline)).code

    with ThreadPoolExecutor(max_workers=9) as pool:
        codes = dict(pool.map(respond, vet_ids + [winner]))

    assert codes[winner] == ResponseCode.assigned
    states = _candidate_states(session_factory, case_id)
    for vet_id in vet_ids:
        if codes[vet_id] == ResponseCode.declined:
            assert states[vet_id] == CandidateStatus.declined
        else:
            assert codes[vet_id] == ResponseCode.already_lost
            assert states[vet_id] == CandidateStatus.lost
    assert states[bystander] == CandidateStatus.lost

    rows, _ = services.delivery_log.search(case_id=case_id, message_kind=MessageKind.case_taken)
    told = sorted(r.vet_id for r in rows)
    assert told == sorted(v for v, s in states.items() if s == CandidateStatus.lost)


def test_accepts_racing_expiry_and_cancel(make_services, add_vet, tokens_for, session_factory):
    """
    ✅ Every vet accepts while an expiry sweep and a cancel run, over
       several cases.
    Expected: each case ends in exactly one terminal state; assigned_vet_id is
    set only for ASSIGNED; there is one ACCEPTED row for an assigned case and
    none otherwise; nobody is left NOTIFIED.
    """
    services = make_services(case_ttl=datetime.timedelta(minutes=30))
    vet_ids = [add_vet(f"Storm {i}") for i in range(6)]
    later = utcnow() + datetime.timedelta(hours=1)

    for _ in range(5):
        case_id = services.coordinator.create_case(**cow_case()).case_id
        tokens = [tokens_for(case_id, v) for v in vet_ids]

        with ThreadPoolExecutor(max_workers=8) as pool:
            accepts = [pool.submit(services.resolver.accept_via_token, t, case_id) for t in tokens]
            sweep = pool.submit(services.coordinator.expire_stale_cases, later)
            cancel = pool.submit(services.resolver.cancel_case, case_id)
            codes = [f.result().code for f in accepts]
            expired = case_id in sweep.result()
            cancelled = cancel.result()

        case = _case(session_factory, case_id)
        states = _candidate_states(session_factory, case_id)
        accepted = [v for v, s in states.items() if s == CandidateStatus.accepted]

        assert case.status in (CaseStatus.assigned, CaseStatus.expired, CaseStatus.cancelled)
        assert [expired, cancelled, case.status == CaseStatus.assigned].count(True) == 1
        assert expired == (case.status == CaseStatus.expired)
        assert cancelled == (case.status == CaseStatus.cancelled)
        assert (case.assigned_vet_id is not None) == (case.status == CaseStatus.assigned)
        assert len(accepted) == (1 if case.status == CaseStatus.assigned else 0)
        assert codes.count(ResponseCode.assigned) == len(accepted)
        if accepted:
            assert accepted == [case.assigned_vet_id]
        assert CandidateStatus.notified not in states.values()
