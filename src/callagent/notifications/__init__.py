"""Participant e-mail composition and delivery."""

from callagent.notifications.email import EmailConfig, Mailer, SmtpMailer
from callagent.notifications.messages import CancelReason, Message, MessageComposer

__all__ = [
    "CancelReason",
    "EmailConfig",
    "Mailer",
    "Message",
    "MessageComposer",
    "SmtpMailer",
]
