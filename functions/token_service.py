import asyncio

from firebase_admin import auth

from errors import SigningUnavailable


class CustomTokenIssuer:
    """Mints Firebase custom tokens with the app's service account."""

    def __init__(self, app=None):
        self._app = app

    async def mint(self, subject_id: str, claims: dict | None = None) -> str:
        try:
            token = await asyncio.to_thread(auth.create_custom_token, subject_id, claims, app=self._app)
        except auth.TokenSignError as e:
            raise SigningUnavailable(f"Could not sign custom token for {subject_id}: {e}") from e
        except ValueError as e:
            # Raised when no service account can be determined for signing
            raise SigningUnavailable(f"Could not create custom token for {subject_id}: {e}") from e
        return token.decode("utf-8") if isinstance(token, bytes) else token
