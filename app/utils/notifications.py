import asyncio
import aiohttp
import aiosmtplib
import json
import logging
from typing import Any, Dict, List, Optional, Set
from datetime import datetime, timezone
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from app.config import settings
from app.core.errors import DeliveryError
from app.core.events import EventBus, EventType, TransportEvent

logger = logging.getLogger(__name__)


class NotificationService(ABC):
    """
    Base class for outbound channels.

    Channels are event-bus subscribers: handle_event raises DeliveryError
    when the external collaborator did not accept the event, and the bus
    retries with backoff. Recipients that already succeeded for an event
    are not contacted again on retry.
    """

    channel = "generic"

    def __init__(self):
        self._delivered: Dict[str, Set[str]] = {}

    @abstractmethod
    async def send_notification(self, recipient: str, message: str, **kwargs) -> None:
        pass

    def recipients(self) -> List[str]:
        return []

    def format_message(self, event: TransportEvent) -> Dict[str, Any]:
        return {"message": format_event_text(event)}

    async def handle_event(self, event: TransportEvent):
        done = self._delivered.setdefault(event.id, set())
        pending = [r for r in self.recipients() if r not in done]
        content = self.format_message(event)

        results = await asyncio.gather(
            *(self.send_notification(recipient, **content) for recipient in pending),
            return_exceptions=True
        )

        failed = []
        for recipient, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.error(f"{self.channel.upper()} delivery of {event.type.value} to {mask(recipient)} failed: {result}")
                failed.append(recipient)
            else:
                done.add(recipient)

        if failed:
            raise DeliveryError(f"{self.channel} delivery failed for {len(failed)}/{len(pending)} recipients")

        self._delivered.pop(event.id, None)
        logger.info(f"{self.channel.upper()}: {event.type.value} sent to {len(pending)} recipients")


def mask(recipient: str) -> str:
    return f"{recipient[:6]}****" if len(recipient) > 6 else "****"


def format_event_text(event: TransportEvent) -> str:
    payload = event.payload
    location = payload.get("location") or {}
    timestamp = event.occurred_at.strftime("%H:%M %d/%m/%Y")

    if event.type == EventType.EMERGENCY_ALERT:
        return (
            f"SCHOOL BUS EMERGENCY\n"
            f"Vehicle: {payload.get('vehicle_id', 'Unknown')}\n"
            f"Type: {str(payload.get('incident_type', 'unknown')).upper()}\n"
            f"Location: {location.get('latitude', 'N/A')}, {location.get('longitude', 'N/A')}\n"
            f"Time: {timestamp}\n"
            f"Incident: {str(payload.get('incident_id', ''))[:8]}\n"
            f"{payload.get('title') or ''}\n"
            f"IMMEDIATE RESPONSE REQUIRED"
        )

    return f"{event.type.value} at {timestamp}: {json.dumps(payload, default=str)}"


class WebhookService(NotificationService):
    """POSTs every event as JSON to the notification collaborator"""

    channel = "webhook"

    def __init__(self, url: Optional[str] = None, timeout_seconds: Optional[float] = None):
        super().__init__()
        self.url = url or settings.NOTIFY_WEBHOOK_URL
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or settings.NOTIFY_TIMEOUT_SECONDS)

    def recipients(self) -> List[str]:
        return [self.url]

    def format_message(self, event: TransportEvent) -> Dict[str, Any]:
        return {"message": json.dumps(event.to_dict(), default=str)}

    async def send_notification(self, recipient: str, message: str, **kwargs) -> None:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json"
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(recipient, data=message, headers=headers) as response:
                    if response.status >= 300:
                        response_text = await response.text()
                        raise DeliveryError(f"Webhook error: {response.status} - {response_text[:200]}")
        except asyncio.TimeoutError:
            raise DeliveryError("Webhook request timeout")
        except aiohttp.ClientError as e:
            raise DeliveryError(f"Webhook request error: {e}")


class SMSService(NotificationService):
    """SMS alerts to emergency contacts through an HTTP SMS provider"""

    channel = "sms"

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: Optional[str] = None,
        phone_numbers: Optional[List[str]] = None
    ):
        super().__init__()
        self.api_url = api_url or settings.SMS_API_URL
        self.api_key = api_key or settings.SMS_API_KEY
        self.sender_id = sender_id or settings.SMS_SENDER_ID
        self.phone_numbers = phone_numbers if phone_numbers is not None else list(settings.EMERGENCY_PHONES)
        self.provider = self._detect_provider()

    def _detect_provider(self) -> str:
        """Detect SMS provider based on API URL"""
        url = self.api_url.lower()
        if "termii" in url:
            return "termii"
        elif "africastalking" in url:
            return "africastalking"
        return "generic"

    def recipients(self) -> List[str]:
        return [self._format_phone_number(phone) for phone in self.phone_numbers]

    def _format_phone_number(self, phone_number: str) -> str:
        """Digits only, international form"""
        cleaned = ''.join(c for c in phone_number if c.isdigit() or c == '+')
        if not cleaned.startswith('+'):
            cleaned = '+' + cleaned
        return cleaned

    def _prepare_sms_payload(self, phone_number: str, message: str) -> Dict[str, Any]:
        if self.provider == "termii":
            return {
                "to": phone_number,
                "from": self.sender_id,
                "sms": message,
                "type": "plain",
                "api_key": self.api_key,
                "channel": "generic"
            }
        elif self.provider == "africastalking":
            return {
                "to": phone_number,
                "message": message,
                "from": self.sender_id
            }
        return {
            "to": phone_number,
            "message": message,
            "from": self.sender_id,
            "api_key": self.api_key
        }

    def _accepted(self, response_data: Dict[str, Any]) -> bool:
        if self.provider == "termii":
            return response_data.get("message_id") is not None
        elif self.provider == "africastalking":
            return "SMSMessageData" in response_data
        return bool(
            response_data.get("success", False) or
            response_data.get("status") == "success" or
            "message_id" in response_data
        )

    async def send_notification(self, recipient: str, message: str, **kwargs) -> None:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json"
        }
        if self.provider == "africastalking":
            headers["apiKey"] = self.api_key

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.api_url,
                    json=self._prepare_sms_payload(recipient, message),
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=settings.NOTIFY_TIMEOUT_SECONDS)
                ) as response:
                    if response.status != 200:
                        response_text = await response.text()
                        raise DeliveryError(f"SMS API error: {response.status} - {response_text[:200]}")
                    response_data = await response.json(content_type=None)
        except asyncio.TimeoutError:
            raise DeliveryError("SMS request timeout")
        except aiohttp.ClientError as e:
            raise DeliveryError(f"SMS request error: {e}")

        if not self._accepted(response_data):
            raise DeliveryError(f"SMS provider rejected message: {response_data}")

    async def handle_event(self, event: TransportEvent):
        if event.type == EventType.EMERGENCY_ALERT:
            logger.critical(f"Emergency SMS for incident {event.payload.get('incident_id')} to {len(self.phone_numbers)} contacts")
        await super().handle_event(event)


class EmailService(NotificationService):
    """Email alerts through SMTP (aiosmtplib)"""

    channel = "email"

    def __init__(self, recipients: Optional[List[str]] = None):
        super().__init__()
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_username = settings.SMTP_USERNAME
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL
        self._recipients = recipients if recipients is not None else list(settings.EMERGENCY_EMAILS)

    def recipients(self) -> List[str]:
        return list(self._recipients)

    def format_message(self, event: TransportEvent) -> Dict[str, Any]:
        payload = event.payload
        if event.type == EventType.EMERGENCY_ALERT:
            subject = f"SCHOOL BUS EMERGENCY - {str(payload.get('incident_type', 'unknown')).upper()}"
        else:
            subject = f"Transport notification: {event.type.value}"

        return {
            "message": format_event_text(event),
            "subject": subject,
            "html_body": self._format_html(subject, event)
        }

    def _format_html(self, subject: str, event: TransportEvent) -> str:
        payload = event.payload
        location = payload.get("location") or {}
        return f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{subject}</title></head>
<body style="font-family: Arial, sans-serif; margin: 20px;">
    <h1 style="background-color: #dc3545; color: white; padding: 15px;">{subject}</h1>
    <p><strong>Incident:</strong> {payload.get('incident_id', 'N/A')}</p>
    <p><strong>Vehicle:</strong> {payload.get('vehicle_id', 'N/A')}</p>
    <p><strong>Severity:</strong> {payload.get('severity', 'N/A')}</p>
    <p><strong>Location:</strong> {location.get('latitude', 'N/A')}, {location.get('longitude', 'N/A')}</p>
    <p><strong>Description:</strong> {payload.get('description') or 'No description provided'}</p>
    <hr>
    <small>Automated alert generated at {datetime.now(timezone.utc).isoformat()}</small>
</body>
</html>
"""

    async def send_notification(self, recipient: str, message: str, **kwargs) -> None:
        email = MIMEMultipart('alternative')
        email['From'] = self.from_email
        email['To'] = recipient
        email['Subject'] = kwargs.get('subject', 'Transport notification')
        email.attach(MIMEText(message, 'plain'))
        if kwargs.get('html_body'):
            email.attach(MIMEText(kwargs['html_body'], 'html'))

        try:
            await aiosmtplib.send(
                email,
                hostname=self.smtp_host,
                port=self.smtp_port,
                start_tls=True,
                username=self.smtp_username or None,
                password=self.smtp_password or None,
                timeout=settings.NOTIFY_TIMEOUT_SECONDS
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"Email sending error: {e}")


def register_notification_channels(bus: EventBus) -> List[NotificationService]:
    """Subscribe every configured channel to the bus"""
    channels: List[NotificationService] = []

    if settings.NOTIFY_WEBHOOK_URL:
        webhook = WebhookService()
        bus.subscribe(webhook.handle_event)
        channels.append(webhook)

    if settings.SMS_API_URL and settings.EMERGENCY_PHONES:
        sms = SMSService()
        bus.subscribe(sms.handle_event, [EventType.EMERGENCY_ALERT])
        channels.append(sms)

    if settings.SMTP_USERNAME and settings.EMERGENCY_EMAILS:
        email = EmailService()
        bus.subscribe(email.handle_event, [EventType.EMERGENCY_ALERT])
        channels.append(email)

    logger.info(f"Notification channels: {[channel.channel for channel in channels] or 'none'}")
    return channels
