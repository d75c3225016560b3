# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the Cocoinbox mail service.

This module defines the data models used throughout the application for
validation, serialization, and type safety.

Models:
    - DomainCreate: Payload for registering an outbound SMTP relay
    - DomainConfig: Stored outbound SMTP relay with quota and priority
    - DomainUsage: Per-domain send counter for the current window
    - MailUser: Sending user with roles (tier source)
    - OutgoingMessage: Message to deliver
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

PREMIUM_ROLE = "pro"


class DeliveryTier(str, Enum):
    """Entitlement level governing which delivery strategies are reachable.

    Attributes:
        FREE: Rotated domains, static SMTP fallback and test mailbox.
        PREMIUM: Premium transactional provider only.
    """

    FREE = "free"
    PREMIUM = "premium"


class DomainCreate(BaseModel):
    """Payload for registering a new outbound SMTP relay.

    Attributes:
        id: Optional identifier; generated when omitted.
        host: SMTP server hostname.
        port: SMTP server port.
        secure: Use implicit TLS when connecting.
        username: SMTP login.
        password: SMTP password.
        from_addr: Default sender address (serialized as ``from``).
        limit: Maximum sends per rolling hour.
        order: Priority rank, lower first. Defaults to the end of the list.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Annotated[
        str | None,
        Field(default=None, min_length=1, max_length=64, description="Domain identifier")
    ]
    host: Annotated[str, Field(min_length=1, description="SMTP server hostname")]
    port: Annotated[int, Field(gt=0, le=65535, description="SMTP server port")]
    secure: Annotated[bool, Field(default=False, description="Use implicit TLS")]
    username: Annotated[str, Field(description="SMTP username")]
    password: Annotated[str, Field(description="SMTP password")]
    from_addr: Annotated[str, Field(alias="from", min_length=1, description="Default sender address")]
    limit: Annotated[int, Field(gt=0, description="Max sends per rolling hour")]
    order: Annotated[
        int | None,
        Field(default=None, description="Priority rank, lower values tried first")
    ]


class DomainConfig(BaseModel):
    """A configured outbound SMTP relay as stored in ``smtp_domains``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    host: str
    port: int
    secure: bool = False
    username: str
    password: str
    from_addr: str = Field(alias="from")
    limit: Annotated[int, Field(gt=0)]
    order: int = 0
    created_at: str | None = None

    def public_dict(self) -> dict:
        """Serialize without the password, using the ``from`` alias."""
        return self.model_dump(by_alias=True, exclude={"password"})


class DomainUsage(BaseModel):
    """Send counter of a domain for the current one-hour window."""

    domain_id: str
    window_start: float
    count: Annotated[int, Field(ge=0)] = 0


class MailUser(BaseModel):
    """The user on whose behalf mail is sent or received."""

    id: str
    roles: list[str] = Field(default_factory=list)

    @property
    def tier(self) -> DeliveryTier:
        """Premium iff the roles contain the premium marker."""
        return DeliveryTier.PREMIUM if PREMIUM_ROLE in self.roles else DeliveryTier.FREE


class OutgoingMessage(BaseModel):
    """Message parameters accepted by :meth:`MailService.send_email`."""

    model_config = ConfigDict(extra="forbid")

    to: Annotated[str, Field(min_length=1, description="Recipient address")]
    subject: str
    text: str | None = None
    html: str | None = None
