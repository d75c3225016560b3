"""Outbound mail service for Cocoinbox with domain rotation and tiered delivery.

This package provides the mail delivery backend used by the Cocoinbox web
application, including:

- A registry of outbound SMTP relays ("domains") with per-hour send quotas
- A priority-ordered domain allocator with persisted rolling windows
- A tiered delivery policy (premium provider, rotated domains, static SMTP
  fallback, smtp.dev test mailbox)
- Prometheus metrics for monitoring
- FastAPI REST API and click CLI for administration

Example:
    Basic usage with the FastAPI application::

        from cocoinbox_mail.config import load_settings
        from cocoinbox_mail.delivery import MailService
        from cocoinbox_mail.api import create_app

        settings = load_settings()
        service = MailService(settings)
        app = create_app(service, api_token=settings.api_token)
"""
