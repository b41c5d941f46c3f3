"""
Subject claims source.

The hospital claims (role, department, PHI access) come from the subject's
profile, which lives outside this service. ``SubjectClaimsProvider`` is the
seam: it is asked for the claims of a subject when a code is exchanged.
"""

from abc import ABC, abstractmethod

from ..models import TokenContext


class SubjectClaimsProvider(ABC):
    @abstractmethod
    async def resolve(self, organization_id: str, subject: str, captured: TokenContext) -> TokenContext:
        """
        Return the claims to issue for ``subject``.

        Args:
            organization_id: Tenant of the subject
            subject: User identifier
            captured: Claims recorded on the authorization code when it was issued
        """


class CodeBoundClaimsProvider(SubjectClaimsProvider):
    """Issues exactly the claims captured when the code was issued."""

    async def resolve(self, organization_id: str, subject: str, captured: TokenContext) -> TokenContext:
        return captured
