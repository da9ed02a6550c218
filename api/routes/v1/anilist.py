"""
api/routes/v1/anilist.py -- Encrypted storage of the user's AniList api key.

Routes:
  POST   /api/v1/anilist/key -- encrypt + upsert the caller's key (requires auth)
  GET    /api/v1/anilist/key -- report whether a readable key is stored (requires auth)
  DELETE /api/v1/anilist/key -- remove the caller's key; idempotent (requires auth)

The plaintext key is trimmed and validated here, encrypted with SecretCipher,
and persisted only as (ciphertext, iv) via CredentialStore. It is decrypted
transiently per request and never returned, cached, or logged.

store_permanently is accepted but both values take the same persistent path.
"""

import logging

from fastapi import APIRouter, Depends, Request

from api.models import ApiKeyStatusResponse, ApiKeyStoreRequest, MessageResponse
from auth.crypto import EncryptedSecret, SecretCipher
from auth.dependencies import get_identity
from auth.models import Identity
from auth.store import CredentialStore
from core.errors import InputValidationError

logger = logging.getLogger("anirec.api.anilist")

router = APIRouter()


@router.post("/anilist/key", response_model=MessageResponse)
async def store_api_key(
    request: Request,
    body: ApiKeyStoreRequest,
    identity: Identity = Depends(get_identity),
) -> MessageResponse:
    """Encrypt and store the caller's AniList key, replacing any previous one."""
    trimmed = body.api_key.strip()
    if not trimmed:
        raise InputValidationError("API key cannot be empty", fields=["api_key"])

    cipher: SecretCipher = request.app.state.cipher
    store: CredentialStore = request.app.state.store
    sealed = cipher.encrypt(trimmed)
    store.upsert_api_key(identity.user_id, sealed.ciphertext, sealed.iv)

    if body.store_permanently:
        logger.info("API key stored for user: %s", identity.user_id)
    else:
        logger.info("API key stored temporarily for user: %s", identity.user_id)
    return MessageResponse(message="API key stored successfully")


@router.get("/anilist/key", response_model=ApiKeyStatusResponse)
async def api_key_status(
    request: Request,
    identity: Identity = Depends(get_identity),
) -> ApiKeyStatusResponse:
    """Report whether the caller has a stored key that still decrypts.

    A stored key that fails decryption surfaces as 502 rather than being
    reported as absent.
    """
    store: CredentialStore = request.app.state.store
    record = store.find_api_key(identity.user_id)
    if record is None:
        return ApiKeyStatusResponse(has_key=False)

    cipher: SecretCipher = request.app.state.cipher
    cipher.decrypt(EncryptedSecret(ciphertext=record.ciphertext, iv=record.iv))
    return ApiKeyStatusResponse(has_key=True, updated_at=record.updated_at)


@router.delete("/anilist/key", response_model=MessageResponse)
async def remove_api_key(
    request: Request,
    identity: Identity = Depends(get_identity),
) -> MessageResponse:
    """Delete the caller's stored key. Succeeds whether or not one was stored."""
    store: CredentialStore = request.app.state.store
    if store.delete_api_key(identity.user_id):
        logger.info("API key removed for user: %s", identity.user_id)
    return MessageResponse(message="API key removed successfully")
