# Notifications Module
"""
Outbound email for codes, reset links and greenhouse alerts.
"""

from .email import EmailSender, SmtpEmailSender, LoggingEmailSender, create_email_sender

__all__ = [
    'EmailSender',
    'SmtpEmailSender',
    'LoggingEmailSender',
    'create_email_sender',
]
