"""
Tests unitaires du GiftService : cycle de vie, chaînage, requêtes et
diffusion vers le hub.
"""

import json
import logging
from datetime import datetime, timedelta

import pytest

from app.database import SessionLocal
from app.exceptions import GiftInvalidStateError, GiftNotFoundError, GiftValidationError
from app.models.gift_models import GiftUnit, GiftUnitStatus
from app.services.gift_service import GiftService


def root_gift_data(**overrides):
    data = {
        "product_id": "P1",
        "product_name": "Cappuccino",
        "product_type": "coffee",
        "quantity": 1,
        "original_order_id": "O1",
    }
    data.update(overrides)
    return data


def audit_lines(caplog, event):
    lines = []
    for record in caplog.records:
        message = record.getMessage()
        if message.startswith("{"):
            payload = json.loads(message)
            if payload.get("event") == event:
                lines.append(payload)
    return lines


@pytest.mark.unit
class TestCreateGiftUnit:
    """Création de cadeaux racine et de continuations."""

    def test_root_gift_starts_a_chain(self, gift_service):
        """Scénario A : racine disponible en position 1."""
        gift = gift_service.create_gift_unit(root_gift_data())

        assert gift.chain_position == 1
        assert gift.status == GiftUnitStatus.AVAILABLE
        assert gift.continued_from_gift_unit_id is None
        assert gift.continued_by_gift_unit_ids == []
        assert gift.id

    def test_continuation_links_parent_and_child(self, gift_service, db_session):
        """Scénario C : la continuation pointe vers le parent et inversement."""
        root = gift_service.create_gift_unit(root_gift_data())

        child = gift_service.create_gift_unit(
            root_gift_data(original_order_id="O2", continued_from_gift_unit_id=root.id)
        )

        db_session.expire_all()
        parent = gift_service.find_by_id(root.id)
        assert child.chain_position == 2
        assert child.continued_from_gift_unit_id == root.id
        assert parent.continued_at is not None
        assert parent.continued_by_gift_unit_ids == [child.id]

    def test_continuation_of_missing_parent_writes_nothing(self, gift_service, db_session):
        with pytest.raises(GiftNotFoundError):
            gift_service.create_gift_unit(root_gift_data(continued_from_gift_unit_id="does-not-exist"))

        assert db_session.query(GiftUnit).count() == 0

    def test_missing_product_name_is_rejected(self, gift_service, db_session):
        with pytest.raises(GiftValidationError):
            gift_service.create_gift_unit(root_gift_data(product_name="  "))

        assert db_session.query(GiftUnit).count() == 0

    def test_zero_quantity_is_rejected(self, gift_service):
        with pytest.raises(GiftValidationError):
            gift_service.create_gift_unit(root_gift_data(quantity=0))

    def test_accepts_camel_case_payload(self, gift_service):
        gift = gift_service.create_gift_unit({
            "productId": "P9",
            "productName": "Latte",
            "originalOrderId": "O9",
            "giftedByName": "Camille",
        })

        assert gift.product_id == "P9"
        assert gift.gifted_by_name == "Camille"
        assert gift.quantity == 1

    def test_creation_is_broadcast_to_hub(self, gift_service, hub):
        gift = gift_service.create_gift_unit(root_gift_data(gifted_by_name="Léa"))

        assert [g["id"] for g in hub.recent_gifts] == [gift.id]
        assert hub.recent_gifts[0]["giftedByName"] == "Léa"
        assert hub.active_chains == [[hub.recent_gifts[0]]]

    def test_continuation_joins_parent_chain_in_hub(self, gift_service, hub):
        root = gift_service.create_gift_unit(root_gift_data())
        child = gift_service.create_gift_unit(root_gift_data(continued_from_gift_unit_id=root.id))

        assert len(hub.active_chains) == 1
        assert [g["id"] for g in hub.active_chains[0]] == [root.id, child.id]
        assert hub.active_chains[0][0]["continuedAt"] is not None
        # Pas de doublon malgré CONTINUED + CREATED pour le même cadeau
        assert [g["id"] for g in hub.recent_gifts] == [child.id, root.id]


@pytest.mark.unit
class TestClaimGiftUnit:
    """Réclamation atomique et transitions à sens unique."""

    def test_claim_marks_gift_claimed(self, gift_service):
        """Scénario B : réclamation par O2."""
        gift = gift_service.create_gift_unit(root_gift_data())

        claimed = gift_service.claim_gift_unit(gift.id, "O2", "C2")

        assert claimed.status == GiftUnitStatus.CLAIMED
        assert claimed.claimed_by_order_id == "O2"
        assert claimed.claimed_by_customer_id == "C2"
        assert claimed.claimed_at is not None

    def test_second_claim_fails_with_invalid_state(self, gift_service):
        gift = gift_service.create_gift_unit(root_gift_data())
        gift_service.claim_gift_unit(gift.id, "O2")

        with pytest.raises(GiftInvalidStateError) as exc_info:
            gift_service.claim_gift_unit(gift.id, "O3")

        assert exc_info.value.status == "CLAIMED"
        assert gift_service.find_by_id(gift.id).claimed_by_order_id == "O2"

    def test_claim_fields_are_not_overwritten(self, gift_service):
        gift = gift_service.create_gift_unit(root_gift_data())
        first = gift_service.claim_gift_unit(gift.id, "O2")
        claimed_at = first.claimed_at

        with pytest.raises(GiftInvalidStateError):
            gift_service.claim_gift_unit(gift.id, "O3", "C3")

        again = gift_service.find_by_id(gift.id)
        assert again.claimed_at == claimed_at
        assert again.claimed_by_customer_id is None

    def test_stale_read_cannot_double_claim(self, db_session, hub, make_gift):
        """Deux caisses lisent AVAILABLE ; seule la première écriture gagne."""
        gift = make_gift()
        first_register = GiftService(db_session, hub=hub)
        other_session = SessionLocal()
        try:
            second_register = GiftService(other_session, hub=hub)
            stale = second_register.find_by_id(gift.id)
            assert stale.status == GiftUnitStatus.AVAILABLE

            first_register.claim_gift_unit(gift.id, "O2")

            with pytest.raises(GiftInvalidStateError):
                second_register.claim_gift_unit(gift.id, "O3")
        finally:
            other_session.close()

    def test_claim_missing_gift_raises_not_found(self, gift_service):
        with pytest.raises(GiftNotFoundError):
            gift_service.claim_gift_unit("missing", "O2")

    def test_claim_expired_gift_is_rejected(self, gift_service, make_gift):
        gift = make_gift(expires_at=datetime.utcnow() - timedelta(hours=1))

        with pytest.raises(GiftInvalidStateError) as exc_info:
            gift_service.claim_gift_unit(gift.id, "O2")

        assert exc_info.value.status == "EXPIRED"
        assert gift_service.find_by_id(gift.id).status == GiftUnitStatus.AVAILABLE

    def test_claim_of_expired_status_is_rejected(self, gift_service, make_gift):
        gift = make_gift(status=GiftUnitStatus.EXPIRED)

        with pytest.raises(GiftInvalidStateError):
            gift_service.claim_gift_unit(gift.id, "O2")

    def test_claim_is_broadcast_to_hub(self, gift_service, hub):
        gift = gift_service.create_gift_unit(root_gift_data())
        claimed = gift_service.claim_gift_unit(gift.id, "O2")

        assert hub.recent_gifts[0]["claimedAt"] == claimed.claimed_at.isoformat()
        assert hub.active_chains[0][0]["claimedAt"] == claimed.claimed_at.isoformat()

    def test_terminal_statuses_have_no_transitions(self):
        claimed = GiftUnit(status=GiftUnitStatus.CLAIMED)
        expired = GiftUnit(status=GiftUnitStatus.EXPIRED)
        available = GiftUnit(status=GiftUnitStatus.AVAILABLE)

        assert not claimed.validate_status_transition(GiftUnitStatus.AVAILABLE)
        assert not expired.validate_status_transition(GiftUnitStatus.CLAIMED)
        assert available.validate_status_transition(GiftUnitStatus.CLAIMED)

    def test_claim_writes_audit_line(self, gift_service, caplog):
        gift = gift_service.create_gift_unit(root_gift_data())

        with caplog.at_level(logging.INFO, logger="app.services.gift_service"):
            gift_service.claim_gift_unit(gift.id, "O2")

        [audit] = audit_lines(caplog, "gift_claimed")
        assert audit["gift_unit_id"] == gift.id
        assert audit["status"] == "CLAIMED"
        assert audit["claimed_by_order_id"] == "O2"
        assert audit["chain"]["position"] == 1

    def test_rejected_claim_writes_audit_line(self, gift_service, make_gift, caplog):
        gift = make_gift(expires_at=datetime.utcnow() - timedelta(hours=1))

        with caplog.at_level(logging.WARNING, logger="app.services.gift_service"):
            with pytest.raises(GiftInvalidStateError):
                gift_service.claim_gift_unit(gift.id, "O2")

        [audit] = audit_lines(caplog, "gift_claim_rejected")
        assert audit["gift_unit_id"] == gift.id
        assert audit["status"] == "AVAILABLE"
        assert audit["reported_status"] == "EXPIRED"
        assert audit["timestamps"]["expires"] is not None


@pytest.mark.unit
class TestAvailableQueries:
    """Filtres de disponibilité et ordres de tri."""

    def test_find_available_is_newest_first(self, gift_service, make_gift, minutes_ago):
        old = make_gift(product_id="P1", created_at=minutes_ago(30))
        new = make_gift(product_id="P2", created_at=minutes_ago(1))
        middle = make_gift(product_id="P1", created_at=minutes_ago(10))

        result = gift_service.find_available()

        assert [g.id for g in result] == [new.id, middle.id, old.id]

    def test_find_available_by_product_is_fifo(self, gift_service, make_gift, minutes_ago):
        newest = make_gift(created_at=minutes_ago(1))
        oldest = make_gift(created_at=minutes_ago(60))
        make_gift(product_id="P2", created_at=minutes_ago(90))
        middle = make_gift(created_at=minutes_ago(20))

        result = gift_service.find_available_by_product("P1")

        assert [g.id for g in result] == [oldest.id, middle.id, newest.id]
        created = [g.created_at for g in result]
        assert created == sorted(created)

    def test_claimed_and_expired_gifts_are_excluded(self, gift_service, make_gift):
        available = make_gift()
        make_gift(status=GiftUnitStatus.CLAIMED)
        make_gift(status=GiftUnitStatus.EXPIRED)
        make_gift(expires_at=datetime.utcnow() - timedelta(minutes=5))
        future = make_gift(expires_at=datetime.utcnow() + timedelta(days=1))

        ids = {g.id for g in gift_service.find_available()}

        assert ids == {available.id, future.id}
        assert gift_service.get_available_count() == 2

    def test_find_by_id_missing(self, gift_service):
        with pytest.raises(GiftNotFoundError):
            gift_service.find_by_id("nope")


@pytest.mark.unit
class TestCreateGiftsFromOrder:
    """Création en lot après paiement."""

    def test_quantities_are_expanded_to_single_units(self, gift_service):
        gifts = gift_service.create_gifts_from_order("O5", [
            {"product_id": "P1", "product_name": "Cappuccino", "quantity": 2},
            {"product_id": "P2", "product_name": "Croissant", "product_type": "pastry", "quantity": 1},
        ])

        assert len(gifts) == 3
        assert all(g.quantity == 1 for g in gifts)
        assert all(g.original_order_id == "O5" for g in gifts)
        assert sorted(g.product_id for g in gifts) == ["P1", "P1", "P2"]
        assert all(g.chain_position == 1 for g in gifts)

    def test_siblings_continue_the_same_parent(self, gift_service, db_session):
        parent = gift_service.create_gift_unit(root_gift_data())

        gifts = gift_service.create_gifts_from_order(
            "O6",
            [{"product_id": "P1", "product_name": "Cappuccino", "quantity": 3}],
            {"claimed_gift_unit_id": parent.id, "gifted_by_name": "Sam"}
        )

        db_session.expire_all()
        parent = gift_service.find_by_id(parent.id)
        assert all(g.continued_from_gift_unit_id == parent.id for g in gifts)
        assert all(g.chain_position == 2 for g in gifts)
        assert parent.continued_by_gift_unit_ids == [g.id for g in gifts]
        assert all(g.gifted_by_name == "Sam" for g in gifts)

    def test_missing_parent_creates_nothing(self, gift_service, db_session):
        with pytest.raises(GiftNotFoundError):
            gift_service.create_gifts_from_order(
                "O7",
                [{"product_id": "P1", "product_name": "Cappuccino", "quantity": 2}],
                {"claimed_gift_unit_id": "ghost"}
            )

        assert db_session.query(GiftUnit).count() == 0

    def test_empty_order_creates_nothing(self, gift_service):
        assert gift_service.create_gifts_from_order("O8", []) == []


@pytest.mark.unit
class TestChainHistory:
    """Parcours des chaînes par références faibles."""

    def _linear_chain(self, gift_service, length):
        gifts = [gift_service.create_gift_unit(root_gift_data(original_order_id="O0"))]
        for i in range(1, length):
            gifts.append(gift_service.create_gift_unit(
                root_gift_data(original_order_id=f"O{i}", continued_from_gift_unit_id=gifts[-1].id)
            ))
        return gifts

    def test_positions_increase_by_one(self, gift_service):
        gifts = self._linear_chain(gift_service, 4)

        for parent, child in zip(gifts, gifts[1:]):
            assert child.chain_position == parent.chain_position + 1

    def test_walking_back_reaches_root(self, gift_service):
        gifts = self._linear_chain(gift_service, 4)

        current = gift_service.find_by_id(gifts[-1].id)
        while current.continued_from_gift_unit_id:
            current = gift_service.find_by_id(current.continued_from_gift_unit_id)

        assert current.id == gifts[0].id
        assert current.chain_position == 1
        assert current.is_chain_root

    def test_history_from_middle_of_chain(self, gift_service):
        gifts = self._linear_chain(gift_service, 4)

        history = gift_service.get_chain_history(gifts[1].id)

        # Ancêtres + cadeau + continuations directes (un seul niveau)
        assert [g.id for g in history["chain"]] == [gifts[0].id, gifts[1].id, gifts[2].id]
        assert history["is_branching"] is False
        assert history["length"] == 3

    def test_history_reports_branching(self, gift_service):
        root = gift_service.create_gift_unit(root_gift_data())
        gift_service.create_gifts_from_order(
            "O2",
            [{"product_id": "P1", "product_name": "Cappuccino", "quantity": 2}],
            {"claimed_gift_unit_id": root.id}
        )

        history = gift_service.get_chain_history(root.id)

        assert history["is_branching"] is True
        assert [g.chain_position for g in history["chain"]] == [1, 2, 2]

    def test_dangling_forward_reference_is_skipped(self, gift_service, make_gift):
        root = make_gift(continued_by_gift_unit_ids=["ghost"])

        history = gift_service.get_chain_history(root.id)

        assert [g.id for g in history["chain"]] == [root.id]

    def test_history_of_missing_gift(self, gift_service):
        with pytest.raises(GiftNotFoundError):
            gift_service.get_chain_history("missing")


@pytest.mark.unit
class TestDisplaySnapshot:
    """Reconstruction de l'instantané des écrans depuis la base."""

    def test_snapshot_groups_gifts_by_chain(self, gift_service):
        root = gift_service.create_gift_unit(root_gift_data())
        child = gift_service.create_gift_unit(root_gift_data(continued_from_gift_unit_id=root.id))
        other = gift_service.create_gift_unit(root_gift_data(product_id="P2", product_name="Thé"))
        gift_service.claim_gift_unit(root.id, "O2")

        snapshot = gift_service.get_display_snapshot()

        chains = [[g["id"] for g in chain] for chain in snapshot["activeChains"]]
        assert chains == [[root.id, child.id], [other.id]]
        assert [g["id"] for g in snapshot["recentGifts"]] == [other.id, child.id, root.id]
        assert snapshot["recentGifts"][2]["claimedAt"] is not None

    def test_snapshot_respects_limit(self, gift_service):
        for i in range(12):
            gift_service.create_gift_unit(root_gift_data(original_order_id=f"O{i}"))

        snapshot = gift_service.get_display_snapshot(limit=10)

        assert len(snapshot["recentGifts"]) == 10
