"""SendGrid v3 mail client."""

from action_processor.integrations.sendgrid.client import SendGridClient, build_mail_payload

__all__ = ["SendGridClient", "build_mail_payload"]
