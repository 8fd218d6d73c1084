"""
Deterministic synthetic test identities.

Every test identity is derived from a sequence number: the display name is the
configured prefix followed by the number zero-padded to seven digits, so the
same number always yields the same identity and two numbers never collide.
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Container

logger = logging.getLogger(__name__)

SEQUENCE_DIGITS = 7
MIN_SEQUENCE = 1
MAX_SEQUENCE = 10 ** SEQUENCE_DIGITS - 1

USERNAME_PATTERN = re.compile(r'^[A-Za-z0-9._\-]+$')
DEFAULT_PASSWORD_POLICIES = 'DisablePasswordExpiration'


class ConstructionError(Exception):
    """Raised when a synthetic identity cannot be built from its sequence number."""
    pass


def display_name_for(prefix: str, sequence: int) -> str:
    """
    Derive the display name for a sequence number.

    Raises:
        ConstructionError: If the number does not fit in seven digits
    """
    if not MIN_SEQUENCE <= sequence <= MAX_SEQUENCE:
        raise ConstructionError(
            f"Sequence number {sequence} outside [{MIN_SEQUENCE}, {MAX_SEQUENCE}]"
        )
    return f"{prefix}{sequence:0{SEQUENCE_DIGITS}d}"


@dataclass(frozen=True)
class SyntheticIdentitySpec:
    """A test identity ready to be rendered into a create request."""
    sequence: int
    display_name: str
    job_title: str
    user_name: str
    email: str
    issuer: str
    password: str
    force_change_password: bool = False
    password_policies: str = DEFAULT_PASSWORD_POLICIES

    def to_payload(self) -> Dict[str, Any]:
        """Render the user body sent to the directory."""
        return {
            'displayName': self.display_name,
            'jobTitle': self.job_title,
            'identities': [
                {
                    'signInType': 'userName',
                    'issuer': self.issuer,
                    'issuerAssignedId': self.user_name,
                },
                {
                    'signInType': 'emailAddress',
                    'issuer': self.issuer,
                    'issuerAssignedId': self.email,
                },
            ],
            'passwordProfile': {
                'password': self.password,
                'forceChangePasswordNextSignIn': self.force_change_password,
            },
            'passwordPolicies': self.password_policies,
        }


class BuildStatus(Enum):
    BUILT = 'built'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass
class BuildResult:
    """Outcome of building the identity for one sequence number."""
    sequence: int
    status: BuildStatus
    display_name: str = ''
    spec: Optional[SyntheticIdentitySpec] = None
    error: Optional[str] = None


class IdentityFactory:
    """
    Builds synthetic identities for a tenant.

    Args:
        prefix: Display-name prefix marking test identities
        issuer_domain: Issuer of the sign-in identities (tenant domain)
        password: Initial password of every test identity
        force_change_password: Require a password change at first sign-in
    """

    def __init__(self, prefix: str, issuer_domain: str, password: str,
                 force_change_password: bool = False):
        self.prefix = prefix
        self.issuer_domain = issuer_domain
        self.password = password
        self.force_change_password = force_change_password

    def display_name(self, sequence: int) -> str:
        return display_name_for(self.prefix, sequence)

    def create(self, sequence: int) -> SyntheticIdentitySpec:
        """
        Build the identity for ``sequence``.

        Raises:
            ConstructionError: If any derived field is invalid
        """
        display_name = self.display_name(sequence)
        user_name = display_name.lower()
        if not USERNAME_PATTERN.match(user_name):
            raise ConstructionError(f"Derived user name '{user_name}' contains unsupported characters")
        if not self.issuer_domain:
            raise ConstructionError("No issuer domain configured for sign-in identities")
        if not self.password:
            raise ConstructionError("No initial password configured for test identities")

        return SyntheticIdentitySpec(
            sequence=sequence,
            display_name=display_name,
            job_title=str(sequence % 10),
            user_name=user_name,
            email=f"{user_name}@{self.issuer_domain}",
            issuer=self.issuer_domain,
            password=self.password,
            force_change_password=self.force_change_password,
        )

    def build(self, sequence: int, existing: Optional[Container[str]] = None) -> BuildResult:
        """
        Build the identity for ``sequence`` without raising.

        Returns:
            SKIPPED if the display name is in ``existing``, FAILED with the
            error message if construction fails, BUILT otherwise
        """
        try:
            display_name = self.display_name(sequence)
            if existing is not None and display_name in existing:
                return BuildResult(sequence, BuildStatus.SKIPPED, display_name)
            spec = self.create(sequence)
        except ConstructionError as e:
            return BuildResult(sequence, BuildStatus.FAILED, error=str(e))
        return BuildResult(sequence, BuildStatus.BUILT, spec.display_name, spec)
