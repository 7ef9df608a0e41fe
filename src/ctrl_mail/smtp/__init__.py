# =============================================================================
# SMTP Module
# =============================================================================
# Handles sending emails via SMTP (Simple Mail Transfer Protocol).
#
# Features:
#   - Connection with implicit TLS or STARTTLS
#   - AUTH LOGIN and AUTH XOAUTH2
#   - Stage-by-stage send with per-recipient failure reporting
# =============================================================================

from ctrl_mail.smtp.client import SMTPSession, build_message

__all__ = [
    "SMTPSession",
    "build_message",
]
