"""Team directory: active teams, their members, and connected mailboxes."""

import logging

from supabase import Client

from src.core.exceptions import DatabaseError
from src.db.supabase import SupabaseClient
from src.models.follow_up import MailAccount, TeamMember

logger = logging.getLogger(__name__)

ACTIVE = "active"
MAIL_INTEGRATION_TYPE = "gmail"


class TeamDirectory:
    """Read-only lookups over teams, memberships and mail integrations."""

    def __init__(self, client: Client | None = None) -> None:
        self._client = client

    @property
    def client(self) -> Client:
        """Get Supabase client."""
        if self._client is None:
            self._client = SupabaseClient.get_client()
        return self._client

    async def list_active_teams(self) -> list[str]:
        """Ids of all active teams.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            result = self.client.table("teams").select("id").eq("status", ACTIVE).execute()
        except Exception as e:
            logger.exception("Error listing active teams")
            raise DatabaseError(f"Failed to list teams: {e}") from e
        return [str(row["id"]) for row in result.data or []]

    async def list_active_members(self, team_id: str) -> list[TeamMember]:
        """Active members of a team."""
        try:
            result = (
                self.client.table("team_members")
                .select("team_id, user_id, role, status")
                .eq("team_id", team_id)
                .eq("status", ACTIVE)
                .execute()
            )
        except Exception as e:
            logger.exception("Error listing team members", extra={"team_id": team_id})
            raise DatabaseError(f"Failed to list team members: {e}") from e
        return [TeamMember.model_validate(row) for row in result.data or []]

    async def get_membership(self, team_id: str, user_id: str) -> TeamMember | None:
        """The user's active membership in the team, if any."""
        try:
            result = (
                self.client.table("team_members")
                .select("team_id, user_id, role, status")
                .eq("team_id", team_id)
                .eq("user_id", user_id)
                .eq("status", ACTIVE)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.exception(
                "Error fetching membership", extra={"team_id": team_id, "user_id": user_id}
            )
            raise DatabaseError(f"Failed to fetch membership: {e}") from e
        rows = result.data or []
        return TeamMember.model_validate(rows[0]) if rows else None

    async def resolve_account(self, user_id: str) -> MailAccount | None:
        """The user's connected Gmail account, or None when not connected.

        A connection with no account email cannot be evaluated and is
        treated as absent.
        """
        try:
            result = (
                self.client.table("user_integrations")
                .select("composio_connection_id, account_email")
                .eq("user_id", user_id)
                .eq("integration_type", MAIL_INTEGRATION_TYPE)
                .eq("status", ACTIVE)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.exception("Error resolving mail account", extra={"user_id": user_id})
            raise DatabaseError(f"Failed to resolve mail account: {e}") from e

        rows = result.data or []
        if not rows:
            return None
        row = rows[0]
        connection_id = row.get("composio_connection_id")
        email = row.get("account_email")
        if not connection_id or not email:
            logger.info("Mail integration for user %s is incomplete; skipping", user_id)
            return None

        return MailAccount(
            user_id=user_id,
            email=str(email),
            connection_id=str(connection_id),
            provider=MAIL_INTEGRATION_TYPE,
            display_name=self._display_name(user_id),
        )

    def _display_name(self, user_id: str) -> str:
        try:
            result = (
                self.client.table("user_profiles")
                .select("full_name")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning("Could not load profile for user %s: %s", user_id, e)
            return ""
        rows = result.data or []
        return str(rows[0].get("full_name") or "") if rows else ""
