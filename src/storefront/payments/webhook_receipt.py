"""Record of every verified webhook delivery, keyed by gateway and event id.

Gateways redeliver until they see a 2xx, so the same event routinely arrives
more than once. A receipt makes the second delivery a cheap acknowledgement
instead of another reconciliation.
"""

from protean import handle
from protean.fields import DateTime, Identifier, String
from protean.utils.globals import current_domain

from storefront.domain import storefront
from storefront.utils.clock import utcnow


@storefront.aggregate
class WebhookReceipt:
    receipt_key = Identifier(identifier=True)  # "<gateway>:<event_id>"
    gateway = String(required=True, max_length=20)
    event_id = String(required=True, max_length=255)
    event_type = String(max_length=100)
    external_ref = String(max_length=255)
    outcome = String(max_length=20)
    received_at = DateTime()

    @staticmethod
    def key_for(gateway, event_id) -> str:
        return f"{gateway}:{event_id}"


@storefront.repository(part_of=WebhookReceipt)
class WebhookReceiptRepository:
    def find(self, gateway, event_id) -> WebhookReceipt | None:
        receipts = self._dao.query.filter(receipt_key=WebhookReceipt.key_for(gateway, event_id)).all().items
        return receipts[0] if receipts else None


@storefront.command(part_of="WebhookReceipt")
class RecordWebhookReceipt:
    gateway = String(required=True, max_length=20)
    event_id = String(required=True, max_length=255)
    event_type = String(max_length=100)
    external_ref = String(max_length=255)
    outcome = String(max_length=20)


@storefront.command_handler(part_of=WebhookReceipt)
class WebhookReceiptHandler:
    @handle(RecordWebhookReceipt)
    def record_webhook_receipt(self, command):
        receipt = WebhookReceipt(
            receipt_key=WebhookReceipt.key_for(command.gateway, command.event_id),
            gateway=command.gateway,
            event_id=command.event_id,
            event_type=command.event_type,
            external_ref=command.external_ref,
            outcome=command.outcome,
            received_at=utcnow(),
        )
        current_domain.repository_for(WebhookReceipt).add(receipt)
