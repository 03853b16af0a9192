from datetime import timedelta

from lovetext.models import MessageLog, Recipient
from lovetext.services.scheduler import compute_next_delivery
from lovetext.utils.clock import utcnow

from conftest import auth_headers

NEW_RECIPIENT = {
    "name": "Ava",
    "email": "ava@example.com",
    "relationship": "girlfriend",
    "frequency": "weekly",
    "time_of_day": "evening",
}


def test_create_requires_entitlement(client, settings, make_customer):
    headers = auth_headers(settings, make_customer())
    response = client.post("/api/customer/recipients", json=NEW_RECIPIENT, headers=headers)
    assert response.status_code == 403
    assert response.json()["detail"].startswith("Upgrade required")


def test_create_sets_first_delivery(client, settings, context, paid_customer):
    headers = auth_headers(settings, paid_customer("plus"))
    before = utcnow()

    response = client.post("/api/customer/recipients", json=NEW_RECIPIENT, headers=headers)

    assert response.status_code == 201
    body = response.json()
    assert body["is_active"] is True
    assert body["frequency"] == "weekly"
    assert "unsubscribe_token" not in body
    with context.session_factory() as db:
        recipient = db.get(Recipient, body["id"])
        assert len(recipient.unsubscribe_token) >= 32
        assert recipient.next_delivery.hour == 18
        assert recipient.next_delivery in (
            compute_next_delivery("weekly", "evening", before),
            compute_next_delivery("weekly", "evening", utcnow()),
        )


def test_basic_plan_allows_three(client, settings, paid_customer):
    headers = auth_headers(settings, paid_customer("basic"))
    for n in range(3):
        payload = dict(NEW_RECIPIENT, name=f"R{n}")
        assert client.post("/api/customer/recipients", json=payload, headers=headers).status_code == 201

    fourth = client.post("/api/customer/recipients", json=NEW_RECIPIENT, headers=headers)
    assert fourth.status_code == 403
    assert "basic plan allows 3" in fourth.json()["detail"]


def test_contact_must_match_delivery_method(client, settings, paid_customer):
    headers = auth_headers(settings, paid_customer())
    sms_without_phone = dict(NEW_RECIPIENT, delivery_method="sms")
    assert client.post("/api/customer/recipients", json=sms_without_phone, headers=headers).status_code == 422

    bad_phone = dict(NEW_RECIPIENT, delivery_method="both", phone="555-1234")
    assert client.post("/api/customer/recipients", json=bad_phone, headers=headers).status_code == 422

    ok = dict(NEW_RECIPIENT, delivery_method="both", phone="+15555550123")
    assert client.post("/api/customer/recipients", json=ok, headers=headers).status_code == 201


def test_list_only_shows_own_recipients(client, settings, paid_customer, make_customer, make_recipient):
    mine = paid_customer()
    theirs = make_customer()
    make_recipient(mine, name="Mine")
    make_recipient(theirs, name="Theirs")

    body = client.get("/api/customer/recipients", headers=auth_headers(settings, mine)).json()

    assert [r["name"] for r in body] == ["Mine"]


def test_update_reschedules_on_frequency_change(client, settings, context, paid_customer, make_recipient):
    customer_id = paid_customer()
    far_future = utcnow() + timedelta(days=30)
    recipient_id = make_recipient(customer_id, next_delivery=far_future)

    response = client.patch(
        f"/api/customer/recipients/{recipient_id}",
        json={"frequency": "daily", "time_of_day": "night"},
        headers=auth_headers(settings, customer_id),
    )

    assert response.status_code == 200
    with context.session_factory() as db:
        recipient = db.get(Recipient, recipient_id)
        assert recipient.frequency == "daily"
        assert recipient.next_delivery.hour == 22
        assert recipient.next_delivery < far_future


def test_update_without_schedule_change_keeps_cursor(client, settings, context, paid_customer, make_recipient):
    customer_id = paid_customer()
    cursor = utcnow() + timedelta(days=3)
    recipient_id = make_recipient(customer_id, next_delivery=cursor)

    response = client.patch(
        f"/api/customer/recipients/{recipient_id}",
        json={"name": "Ava Rose", "frequency": "daily"},
        headers=auth_headers(settings, customer_id),
    )

    assert response.status_code == 200
    assert response.json()["name"] == "Ava Rose"
    with context.session_factory() as db:
        assert db.get(Recipient, recipient_id).next_delivery == cursor


def test_update_rejects_method_without_contact(client, settings, paid_customer, make_recipient):
    customer_id = paid_customer()
    recipient_id = make_recipient(customer_id)

    response = client.patch(
        f"/api/customer/recipients/{recipient_id}",
        json={"delivery_method": "sms"},
        headers=auth_headers(settings, customer_id),
    )

    assert response.status_code == 400


def test_cannot_touch_someone_elses_recipient(client, settings, paid_customer, make_customer, make_recipient):
    owner = paid_customer()
    intruder = make_customer()
    recipient_id = make_recipient(owner)
    headers = auth_headers(settings, intruder)

    assert client.patch(f"/api/customer/recipients/{recipient_id}", json={"name": "x"}, headers=headers).status_code == 404
    assert client.delete(f"/api/customer/recipients/{recipient_id}", headers=headers).status_code == 404


def test_delete_recipient(client, settings, context, paid_customer, make_recipient):
    customer_id = paid_customer()
    recipient_id = make_recipient(customer_id)

    response = client.delete(f"/api/customer/recipients/{recipient_id}", headers=auth_headers(settings, customer_id))

    assert response.status_code == 200
    with context.session_factory() as db:
        assert db.get(Recipient, recipient_id) is None


def test_history_returns_latest_five(client, settings, context, paid_customer, make_recipient):
    customer_id = paid_customer()
    recipient_id = make_recipient(customer_id)
    start = utcnow() - timedelta(days=10)
    with context.session_factory.begin() as db:
        for n in range(7):
            db.add(MessageLog(
                customer_id=customer_id, recipient_id=recipient_id, channel="email",
                address="ava@example.com", message=f"note {n}", kind="scheduled",
                delivered=True, sent_at=start + timedelta(days=n),
            ))

    response = client.get(
        f"/api/customer/recipients/{recipient_id}/messages", headers=auth_headers(settings, customer_id)
    )

    assert response.status_code == 200
    assert [m["message"] for m in response.json()["messages"]] == ["note 6", "note 5", "note 4", "note 3", "note 2"]


def test_flowers_are_sent_and_capped(client, settings, context, paid_customer, make_recipient, email_sender):
    customer_id = paid_customer()
    recipient_id = make_recipient(customer_id)
    headers = auth_headers(settings, customer_id)
    url = f"/api/customer/recipients/{recipient_id}/flowers"

    first = client.post(url, json={"note": "Thinking of you"}, headers=headers)
    assert first.status_code == 200
    assert first.json()["sent"] is True
    assert email_sender.sent[0]["text"].startswith("🌸 You received a flower! Thinking of you")

    assert client.post(url, json={}, headers=headers).status_code == 200
    third = client.post(url, json={}, headers=headers)
    assert third.status_code == 429

    with context.session_factory() as db:
        kinds = [log.kind for log in db.query(MessageLog).filter_by(recipient_id=recipient_id)]
    assert kinds == ["flowers", "flowers"]


def test_flowers_count_sends_not_channels(client, settings, paid_customer, make_recipient, sms_sender):
    customer_id = paid_customer()
    recipient_id = make_recipient(customer_id, delivery_method="both", phone="+15555550123")
    headers = auth_headers(settings, customer_id)
    url = f"/api/customer/recipients/{recipient_id}/flowers"

    assert client.post(url, json={}, headers=headers).status_code == 200
    assert client.post(url, json={}, headers=headers).status_code == 200
    assert len(sms_sender.sent) == 2
    assert client.post(url, json={}, headers=headers).status_code == 429


def test_flowers_need_entitlement(client, settings, make_customer, make_recipient):
    customer_id = make_customer()
    recipient_id = make_recipient(customer_id)

    response = client.post(
        f"/api/customer/recipients/{recipient_id}/flowers", json={}, headers=auth_headers(settings, customer_id)
    )

    assert response.status_code == 403


def test_flowers_refused_for_unsubscribed_recipient(client, settings, paid_customer, make_recipient, email_sender):
    customer_id = paid_customer()
    recipient_id = make_recipient(customer_id, unsubscribe_token="tok-flowers")
    client.get("/unsubscribe/tok-flowers")

    response = client.post(
        f"/api/customer/recipients/{recipient_id}/flowers", json={}, headers=auth_headers(settings, customer_id)
    )

    assert response.status_code == 409
    assert email_sender.sent == []


def test_update_requires_entitlement(client, settings, make_customer, make_recipient):
    customer_id = make_customer()
    recipient_id = make_recipient(customer_id)

    response = client.patch(
        f"/api/customer/recipients/{recipient_id}",
        json={"frequency": "weekly"},
        headers=auth_headers(settings, customer_id),
    )

    assert response.status_code == 403


def test_owner_can_pause_and_resume(client, settings, context, paid_customer, make_recipient):
    customer_id = paid_customer()
    recipient_id = make_recipient(customer_id)
    headers = auth_headers(settings, customer_id)
    url = f"/api/customer/recipients/{recipient_id}"

    assert client.patch(url, json={"is_active": False}, headers=headers).json()["is_active"] is False
    assert client.patch(url, json={"is_active": True}, headers=headers).json()["is_active"] is True


def test_owner_cannot_reactivate_unsubscribed_recipient(client, settings, context, paid_customer, make_recipient):
    customer_id = paid_customer()
    recipient_id = make_recipient(customer_id, unsubscribe_token="tok-gone")
    client.get("/unsubscribe/tok-gone")

    response = client.patch(
        f"/api/customer/recipients/{recipient_id}",
        json={"is_active": True},
        headers=auth_headers(settings, customer_id),
    )

    assert response.status_code == 409
    with context.session_factory() as db:
        recipient = db.get(Recipient, recipient_id)
        assert recipient.is_active is False
        assert recipient.unsubscribed_at is not None
