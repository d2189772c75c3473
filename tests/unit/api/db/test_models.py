import pytest
from sqlalchemy import inspect, text

from api_service.db.models import Base, TeamMemberRole, Token, User, enum_values
from devplane.users.repositories import UserRepository

pytestmark = [pytest.mark.asyncio]


def test_user_model_columns():
    """Test that the User model has the expected columns."""
    columns = [column.key for column in inspect(User).columns]

    assert "id" in columns
    assert "blocked" in columns
    assert "feature_flags" in columns
    assert "creation_time" in columns


def test_all_tables_registered():
    import devplane.prebuilds.models  # noqa: F401
    import devplane.projects.models  # noqa: F401
    import devplane.webhooks.models  # noqa: F401
    import devplane.workspaces.models  # noqa: F401

    assert {
        "user",
        "identity",
        "token",
        "team",
        "team_membership",
        "app_installation",
        "project",
        "workspace",
        "workspace_instance",
        "prebuilt_workspace",
        "webhook_event",
    } <= set(Base.metadata.tables)


def test_enum_values_persist_lowercase_labels():
    assert enum_values(TeamMemberRole) == ["owner", "member"]


async def test_token_value_is_encrypted_at_rest(sqlite_db):
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            users = UserRepository(session)
            user = await users.create_user(name="dev")
            identity = await users.add_identity(
                user, auth_provider_id="Public-GitHub", auth_id="42"
            )
            token = await users.add_token(identity, value="plain-secret", scopes=["repo"])

            raw = (
                await session.execute(
                    text("SELECT value FROM token WHERE id = :id"),
                    {"id": token.id.hex},
                )
            ).scalar_one()

            assert raw != "plain-secret"
            assert isinstance(token, Token)
            tokens = await users.find_tokens_for_identity("Public-GitHub", "42")
            assert [item.value for item in tokens] == ["plain-secret"]
