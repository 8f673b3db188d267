"""
Activation code delivery.
"""
import json

import httpx

from title_registry.activation import UnconfiguredActivationSender, WebhookActivationSender
from title_registry.config import RegistryConfig
from title_registry.memory_store import MemoryDocumentStore
from title_registry.registry import TitleRegistryService

BUYER = {"_id": "u-1", "phoneNumber": "01066666666", "fullName": "سارة محمود"}


async def test_webhook_posts_token():
    received = []

    def handler(request):
        received.append((request.url, json.loads(request.content)))
        return httpx.Response(202)

    sender = WebhookActivationSender("https://sms.example/activation", transport=httpx.MockTransport(handler))

    assert await sender.send(BUYER, "123456") is True
    url, body = received[0]
    assert str(url) == "https://sms.example/activation"
    assert body == {
        "userId": "u-1",
        "phoneNumber": "01066666666",
        "fullName": "سارة محمود",
        "activationToken": "123456"
    }


async def test_webhook_error_status_reports_failure():
    sender = WebhookActivationSender(
        "https://sms.example/activation", transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )
    assert await sender.send(BUYER, "123456") is False


async def test_webhook_unreachable_reports_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    sender = WebhookActivationSender("https://sms.example/activation", transport=httpx.MockTransport(handler))
    assert await sender.send(BUYER, "123456") is False


async def test_unconfigured_sender_drops_token():
    assert await UnconfiguredActivationSender().send(BUYER, "123456") is False


def test_service_picks_sender_from_config():
    configured = TitleRegistryService(
        MemoryDocumentStore(), RegistryConfig(activation_webhook_url="https://sms.example/activation")
    )
    assert isinstance(configured.activation_sender, WebhookActivationSender)
    assert configured.sales.activation_sender is configured.activation_sender

    unconfigured = TitleRegistryService(MemoryDocumentStore(), RegistryConfig())
    assert isinstance(unconfigured.activation_sender, UnconfiguredActivationSender)


async def test_failed_delivery_does_not_undo_the_sale(store, owner, approved_contract, service, monkeypatch):
    async def failing_send(user, token):
        return False

    monkeypatch.setattr(service.sales.activation_sender, "send", failing_send)

    result = await service.initiate_sale(approved_contract["_id"], owner["_id"], "سارة", "01066666666", 550000)

    assert result["isNewUser"] is True
    assert (await service.get_transaction(result["transaction"]["_id"]))["status"] == "pending"
