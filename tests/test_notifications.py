from restaurant_engine.services.notifications import MockNotificationService, render

PAYLOAD = {
    "order_number": "ORD-20240115-0001",
    "total_amount": "260.00",
    "contact_phone": "+91 98765 43210",
    "contact_email": "asha@example.com",
}


def quiet_mock(failure_rate=0.0):
    return MockNotificationService(failure_rate=failure_rate, max_latency=0)


def test_render_fills_the_template():
    message = render(1, "order_created", PAYLOAD)

    assert message.subject == "Order ORD-20240115-0001 received"
    assert "260.00" in message.body
    assert message.to_phone == PAYLOAD["contact_phone"]


def test_render_missing_fields_fall_back():
    message = render(3, "order_cancelled", {})
    assert message.subject == "Order #3 cancelled"
    assert "Reason: n/a" in message.body


async def test_mock_keeps_an_order_timeline():
    notifier = quiet_mock()

    for kind in ("order_created", "order_confirmed"):
        result = await notifier.deliver(render(1, kind, PAYLOAD))
        assert result.success
        assert result.provider == "mock"
    await notifier.deliver(render(2, "order_created", PAYLOAD))

    assert notifier.timeline(1) == ["order_created", "order_confirmed"]
    assert notifier.timeline(2) == ["order_created"]


async def test_mock_failures_stay_out_of_the_outbox():
    notifier = quiet_mock(failure_rate=1.0)

    result = await notifier.deliver(render(1, "order_created", PAYLOAD))

    assert not result.success
    assert "Simulated sms failure" in result.error_message
    assert notifier.timeline(1) == []


async def test_message_without_address_counts_as_delivered():
    notifier = quiet_mock(failure_rate=1.0)
    result = await notifier.deliver(render(1, "order_ready", {}))
    assert result.success
