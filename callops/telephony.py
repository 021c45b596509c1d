"""
Telephony backends: a uniform contract over the two ways an operator can
dial. Manual calls run a local timer only; Zoom Phone calls are placed
remotely and report status asynchronously.

The session controller picks one backend when the call starts and only ever
talks to it through this interface.
"""

from __future__ import annotations

import abc
from typing import Optional

import structlog

from callops.models import BackendKind, ProviderCallStatus
from callops.phone_utils import normalise_phone
from callops.zoom_client import ZoomAPIError, ZoomClient

log = structlog.get_logger(__name__)


class TelephonyError(Exception):
    """A telephony operation failed; the message is safe to show operators."""


class OriginationError(TelephonyError):
    """The call could not be placed. The session never became active."""


class TelephonyBackend(abc.ABC):
    kind: BackendKind
    polls_status: bool = False

    @abc.abstractmethod
    async def originate(self, target_number: str) -> Optional[str]:
        """Start the call and return the provider call reference, if any."""

    @abc.abstractmethod
    async def poll_status(self, provider_call_ref: str) -> ProviderCallStatus:
        """Fetch the remote status of an active call."""

    @abc.abstractmethod
    async def terminate(self, provider_call_ref: Optional[str]) -> None:
        """End the call at the provider."""


class ManualBackend(TelephonyBackend):
    """The operator dials on their own handset; only the local timer runs."""

    kind = BackendKind.MANUAL
    polls_status = False

    async def originate(self, target_number: str) -> Optional[str]:
        return None

    async def poll_status(self, provider_call_ref: str) -> ProviderCallStatus:
        raise TelephonyError("Manual calls have no provider status")

    async def terminate(self, provider_call_ref: Optional[str]) -> None:
        return None


class ZoomPhoneBackend(TelephonyBackend):
    """Places and monitors calls through Zoom Phone for one Zoom user."""

    kind = BackendKind.PROVIDER
    polls_status = True

    def __init__(
        self,
        zoom: ZoomClient,
        user_id: str,
        caller_number: str = "",
        region: str = "JP",
    ):
        self.zoom = zoom
        self.user_id = user_id
        self.caller_number = caller_number
        self.region = region

    async def originate(self, target_number: str) -> Optional[str]:
        if not self.user_id:
            raise OriginationError("No Zoom Phone user selected")

        e164, valid = normalise_phone(target_number, self.region)
        if not valid:
            raise OriginationError(f"Invalid phone number: {target_number}")

        try:
            data = await self.zoom.make_call(
                user_id=self.user_id,
                callee_number=e164,
                caller_number=self.caller_number,
            )
        except ZoomAPIError as e:
            log.warning("zoom_originate_failed", user_id=self.user_id, error=str(e))
            raise OriginationError(str(e)) from e

        call_id = data.get("call_id", "")
        if not call_id:
            raise OriginationError("Zoom did not return a call ID")
        return call_id

    async def poll_status(self, provider_call_ref: str) -> ProviderCallStatus:
        try:
            return await self.zoom.get_call_status(self.user_id, provider_call_ref)
        except ZoomAPIError as e:
            raise TelephonyError(str(e)) from e

    async def terminate(self, provider_call_ref: Optional[str]) -> None:
        if not provider_call_ref:
            return
        try:
            await self.zoom.end_call(self.user_id, provider_call_ref)
        except ZoomAPIError as e:
            raise TelephonyError(str(e)) from e
