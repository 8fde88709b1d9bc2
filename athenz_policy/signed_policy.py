"""Signed policy documents and their signature verification."""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .errors import PolicyError, wrap

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
"""The timestamp an unreadable time string decodes to."""

_TIMESTAMP_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?(Z|[+-]\d{2}:\d{2})\Z"
)
_HTML_ESCAPES = {"&": "\\u0026", "<": "\\u003c", ">": "\\u003e"}


class KeyEnv(enum.Enum):
    """The Athenz service a public key belongs to."""

    ZTS = "zts"
    ZMS = "zms"


KeyProvider = Callable[[KeyEnv, str], Any]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def go_time_string(value: datetime) -> str:
    """Render a time as ``2006-01-02 15:04:05.999 +0000 UTC``, in UTC."""
    utc = _as_utc(value)
    fraction = f"{utc.microsecond:06d}".rstrip("0")
    text = utc.strftime("%Y-%m-%d %H:%M:%S").rjust(19, "0")
    return f"{text}{'.' + fraction if fraction else ''} +0000 UTC"


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; unreadable text gives :data:`ZERO_TIME`."""
    match = _TIMESTAMP_RE.match(text)
    if match is None:
        return ZERO_TIME
    parts = [int(p) for p in match.groups()[:6]]
    microsecond = int(((match.group(7) or "") + "000000")[:6])
    zone = match.group(8)
    tz = timezone.utc
    if zone != "Z":
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    try:
        return datetime(*parts, microsecond, tzinfo=tz).astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return ZERO_TIME


def format_timestamp(value: datetime) -> str:
    """Render a time as ``2006-01-02T15:04:05.999Z`` with millisecond precision."""
    utc = _as_utc(value)
    return f"{utc.strftime('%Y-%m-%dT%H:%M:%S').rjust(19, '0')}.{utc.microsecond // 1000:03d}Z"


def _compact_json(obj: Any) -> str:
    text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    return re.sub(r"[&<>]", lambda m: _HTML_ESCAPES[m.group()], text)


def _timestamp(value: Any) -> Optional[datetime]:
    return None if value is None else parse_timestamp(str(value))


@dataclass
class PolicyAssertion:
    """One assertion of a policy: a role may or may not do an action on a resource."""

    role: str = ""
    action: str = ""
    resource: str = ""
    effect: str = ""


@dataclass
class Policy:
    """A named set of assertions."""

    name: str = ""
    modified: Optional[datetime] = None
    assertions: list[PolicyAssertion] = field(default_factory=list)

    def _to_dict(self) -> dict:
        result: dict[str, Any] = {"name": self.name}
        if self.modified is not None:
            result["modified"] = format_timestamp(self.modified)
        result["assertions"] = [
            {"role": a.role, "resource": a.resource, "action": a.action, "effect": a.effect}
            for a in self.assertions
        ]
        return result


@dataclass
class PolicyData:
    """The policies of one domain."""

    domain: str = ""
    policies: list[Policy] = field(default_factory=list)

    def _to_dict(self) -> dict:
        return {"domain": self.domain, "policies": [p._to_dict() for p in self.policies]}

    def to_json(self) -> str:
        """The compact JSON form the ZMS signature covers."""
        return _compact_json(self._to_dict())


@dataclass
class SignedPolicyData:
    """Policy data with its ZMS signature and validity period."""

    policy_data: Optional[PolicyData] = None
    zms_signature: str = ""
    zms_key_id: str = ""
    modified: Optional[datetime] = None
    expires: Optional[datetime] = None

    def _to_dict(self) -> dict:
        return {
            "policyData": None if self.policy_data is None else self.policy_data._to_dict(),
            "zmsSignature": self.zms_signature,
            "zmsKeyId": self.zms_key_id,
            "modified": None if self.modified is None else format_timestamp(self.modified),
            "expires": None if self.expires is None else format_timestamp(self.expires),
        }

    def to_json(self) -> str:
        """The compact JSON form the ZTS signature covers."""
        return _compact_json(self._to_dict())


def _policy_data_from_dict(data: dict) -> PolicyData:
    return PolicyData(
        domain=data.get("domain") or "",
        policies=[
            Policy(
                name=p.get("name") or "",
                modified=_timestamp(p.get("modified")),
                assertions=[
                    PolicyAssertion(
                        role=a.get("role") or "",
                        action=a.get("action") or "",
                        resource=a.get("resource") or "",
                        effect=a.get("effect") or "",
                    )
                    for a in p.get("assertions") or []
                ],
            )
            for p in data.get("policies") or []
        ],
    )


@dataclass
class SignedPolicy:
    """A domain's signed policy data as served by ZTS."""

    signed_policy_data: Optional[SignedPolicyData] = None
    signature: str = ""
    key_id: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "SignedPolicy":
        """Build a signed policy from decoded JSON; raise ValueError on bad input."""
        if not isinstance(data, dict):
            raise ValueError("signed policy: expected a JSON object")
        try:
            spd = data.get("signedPolicyData")
            signed = None
            if spd is not None:
                pd = spd.get("policyData")
                signed = SignedPolicyData(
                    policy_data=None if pd is None else _policy_data_from_dict(pd),
                    zms_signature=spd.get("zmsSignature") or "",
                    zms_key_id=spd.get("zmsKeyId") or "",
                    modified=_timestamp(spd.get("modified")),
                    expires=_timestamp(spd.get("expires")),
                )
            return cls(
                signed_policy_data=signed,
                signature=data.get("signature") or "",
                key_id=data.get("keyId") or "",
            )
        except (AttributeError, TypeError) as exc:
            raise ValueError(f"signed policy: {exc}") from exc

    def to_dict(self) -> dict:
        """The JSON-ready form of the signed policy."""
        spd = self.signed_policy_data
        return {
            "signedPolicyData": None if spd is None else spd._to_dict(),
            "signature": self.signature,
            "keyId": self.key_id,
        }

    def verify(self, provider: KeyProvider) -> None:
        """Check expiry and both signatures; raise PolicyError when invalid."""
        spd = self.signed_policy_data
        if spd is None:
            raise PolicyError("no policy data")
        if spd.expires is None:
            raise PolicyError("policy without expiry")
        if _as_utc(spd.expires) <= datetime.now(timezone.utc):
            raise PolicyError(f"policy already expired at {go_time_string(spd.expires)}")

        verifier = provider(KeyEnv.ZTS, self.key_id)
        if verifier is None:
            raise PolicyError("zts key not found")
        try:
            verifier.verify(spd.to_json(), self.signature)
        except Exception as exc:
            raise wrap(exc, "error verify signature") from exc

        verifier = provider(KeyEnv.ZMS, spd.zms_key_id)
        if verifier is None:
            raise PolicyError("zms key not found")
        policy_json = "null" if spd.policy_data is None else spd.policy_data.to_json()
        try:
            verifier.verify(policy_json, spd.zms_signature)
        except Exception as exc:
            raise wrap(exc, "error verify zms signature") from exc