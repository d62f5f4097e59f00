import pytest

from loyalty_ledger.services.notifications import (
    TEMPLATES,
    NotificationKind,
    NotificationService,
    render_notification,
)


def test_every_notification_kind_has_a_template() -> None:
    assert set(TEMPLATES) == set(NotificationKind)


def test_redeemed_template_formats_discount() -> None:
    template = render_notification(
        NotificationKind.POINTS_REDEEMED,
        {"points": 45, "discount_value": "2.25", "currency": "eur", "order_id": "ord-9", "balance": 105},
        contact_name="Ada",
    )

    assert template.subject == "You redeemed 45 points"
    assert template.text_body.startswith("Hi Ada,")
    assert "€2.25" in template.text_body
    assert "order #ord-9" in template.text_body
    assert "105 points" in template.text_body
    assert "<html>" in template.html_body


def test_adjusted_template_handles_deductions() -> None:
    template = render_notification(NotificationKind.POINTS_ADJUSTED, {"points": -20, "reason": "Duplicate <credit>"})

    assert "removed from" in template.text_body
    assert "20 points" in template.text_body
    assert "Duplicate &lt;credit&gt;" in template.html_body
    assert template.text_body.startswith("Hi there,")


@pytest.mark.asyncio
async def test_notification_service_sends_through_backend(session_factory, make_user) -> None:
    user = await make_user(email="notify@example.com")

    async with session_factory() as session:
        service = NotificationService(session, enabled=True)
        backend = service.use_in_memory_backend()

        await service.notify(user.id, NotificationKind.POINTS_EARNED, {"points": 12, "order_id": "ord-1", "balance": 40})
        await service.notify(user.id, "not-a-kind", {"points": 1})

    assert len(backend.sent_messages) == 1
    message = backend.sent_messages[0]
    assert message["To"] == "notify@example.com"
    assert message["Subject"] == "12 points added to your account"
    assert [event.event_type for event in service.sent_events] == ["points_earned"]


@pytest.mark.asyncio
async def test_disabled_notifications_are_dropped(session_factory, make_user) -> None:
    user = await make_user()

    async with session_factory() as session:
        service = NotificationService(session, enabled=False)
        backend = service.use_in_memory_backend()
        await service.notify(user.id, NotificationKind.POINTS_EXPIRED, {"points": 5})

    assert backend.sent_messages == []
    assert service.sent_events == []
