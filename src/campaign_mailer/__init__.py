"""Scheduled, encrypted bulk email delivery service.

This package provides:

- Campaigns whose per-recipient sends are spread across a time window
- A cron-driven queue processor with atomic job claiming, retry/backoff
  bookkeeping and automatic batch continuation
- AES-256-GCM encryption of SMTP credentials and message content at rest
- Company-name placeholders filled from the recipient's domain
- Open, click and survey tracking
- Pooled, rate-limited SMTP delivery through aiosmtplib
- Prometheus metrics and a FastAPI REST API

Example:
    Basic usage with the FastAPI application::

        from campaign_mailer.config_loader import load_settings
        from campaign_mailer.core import CampaignMailerCore
        from campaign_mailer.api import create_app

        core = CampaignMailerCore(load_settings())
        app = create_app(core)
"""
