"""Cancellation schemas"""

import uuid
from typing import Optional

from pydantic import BaseModel, field_validator

from ...utils.sanitization import sanitize_string


class RefundBreakdownRequest(BaseModel):
    policy_id: uuid.UUID


class CancelWithPolicyRequest(BaseModel):
    policy_id: uuid.UUID
    explanation: Optional[str] = None
    acknowledge_policy: bool = False

    @field_validator("explanation")
    @classmethod
    def sanitize_explanation(cls, v):
        return sanitize_string(v, max_length=2000)


class AuthorizeCancellationRequest(BaseModel):
    policy_id: Optional[uuid.UUID] = None
    explanation: Optional[str] = None

    @field_validator("explanation")
    @classmethod
    def sanitize_explanation(cls, v):
        return sanitize_string(v, max_length=2000)


class LegacyCancelRequest(BaseModel):
    cancellation_reason: Optional[str] = None

    @field_validator("cancellation_reason")
    @classmethod
    def sanitize_reason(cls, v):
        return sanitize_string(v, max_length=1000)
