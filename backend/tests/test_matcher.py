from __future__ import annotations

from datetime import timedelta

from app.domain import AcquisitionKind, AcquisitionRecord, MatchMethod
from reconciliation.matcher import match_acquisition

from conftest import ACQUIRED_AT, OTHER_WALLET, WALLET, purchase

ACQUISITION = AcquisitionRecord(
    acquired_at=ACQUIRED_AT,
    from_address=OTHER_WALLET,
    tx_id="0xabc",
    acquisition_kind=AcquisitionKind.TRANSFER,
    block_height=950_000,
)


def test_no_acquisition_never_matches():
    result = match_acquisition(None, [purchase("A")], viewer_wallet=WALLET)

    assert result.matched_purchase is None
    assert result.match_method is MatchMethod.NONE


def test_identity_beats_time_distance():
    viewer = purchase("viewer", buyer=WALLET, at=ACQUIRED_AT + timedelta(minutes=8))
    stranger = purchase("stranger", buyer="0x" + "c" * 40, at=ACQUIRED_AT - timedelta(minutes=2))

    result = match_acquisition(ACQUISITION, [stranger, viewer], viewer_wallet=WALLET)

    assert result.matched_purchase == viewer
    assert result.match_method is MatchMethod.TIME_WINDOW
    assert result.candidates_in_window == 2


def test_current_owner_counts_as_identity():
    owner = purchase("owner", buyer=OTHER_WALLET, at=ACQUIRED_AT + timedelta(minutes=9))
    stranger = purchase("stranger", buyer="0x" + "c" * 40, at=ACQUIRED_AT)

    result = match_acquisition(
        ACQUISITION, [stranger, owner], viewer_wallet=WALLET, current_owner=OTHER_WALLET
    )

    assert result.matched_purchase == owner


def test_closest_wins_without_identity_and_ties_break_on_purchase_id():
    far = purchase("A", buyer="0x" + "c" * 40, at=ACQUIRED_AT + timedelta(minutes=5))
    near_b = purchase("C", buyer="0x" + "d" * 40, at=ACQUIRED_AT - timedelta(minutes=1))
    near_a = purchase("B", buyer="0x" + "e" * 40, at=ACQUIRED_AT + timedelta(minutes=1))

    for ordering in ([far, near_b, near_a], [near_a, far, near_b], [near_b, near_a, far]):
        result = match_acquisition(ACQUISITION, ordering, viewer_wallet=WALLET)
        assert result.matched_purchase == near_a


def test_candidates_outside_window_are_ignored():
    late = purchase("late", at=ACQUIRED_AT + timedelta(minutes=10, seconds=1))

    result = match_acquisition(ACQUISITION, [late], viewer_wallet=WALLET)

    assert result.match_method is MatchMethod.NONE
    assert result.candidates_in_window == 0


def test_window_edge_is_inclusive():
    edge = purchase("edge", at=ACQUIRED_AT - timedelta(minutes=10))

    result = match_acquisition(ACQUISITION, [edge], viewer_wallet=WALLET)

    assert result.matched_purchase == edge


def test_exact_transaction_wins_over_window_and_identity():
    exact = purchase("exact", buyer="0x" + "c" * 40, at=ACQUIRED_AT + timedelta(hours=3), tx_id="0xABC")
    in_window = purchase("window", buyer=WALLET, at=ACQUIRED_AT)

    result = match_acquisition(ACQUISITION, [in_window, exact], viewer_wallet=WALLET)

    assert result.matched_purchase == exact
    assert result.match_method is MatchMethod.EXACT_TX


def test_exact_transaction_works_without_acquisition_time():
    acquisition = AcquisitionRecord(
        acquired_at=None,
        from_address=OTHER_WALLET,
        tx_id="0xabc",
        acquisition_kind=AcquisitionKind.TRANSFER,
    )
    exact = purchase("exact", tx_id="0xabc")

    assert match_acquisition(acquisition, [exact]).match_method is MatchMethod.EXACT_TX
    assert match_acquisition(acquisition, [purchase("other")]).match_method is MatchMethod.NONE


def test_match_is_deterministic_and_single():
    candidates = [
        purchase(str(i), buyer="0x" + "c" * 40, at=ACQUIRED_AT + timedelta(minutes=i % 3))
        for i in range(10)
    ]

    results = [match_acquisition(ACQUISITION, candidates, viewer_wallet=WALLET) for _ in range(3)]

    assert all(result == results[0] for result in results)
    assert results[0].matched_purchase.purchase_id == "0"
