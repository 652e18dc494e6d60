"""
DUPR rating sync.

Ratings arrive from two places: the rating-change webhook and explicit
player lookups (daily sweep, manual refresh). Both land in the rating
snapshot table keyed by DUPR id and, when a profile is linked to that id,
on the profile itself.

Webhook registration (single, bulk, on account link), the DUPR+ membership
flag and the credential health check live here too.
"""

import asyncio
import logging
import time
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.config import Settings
from duprsync.dupr.auth import DuprTokenProvider
from duprsync.dupr.client import DuprClient, PlayerRatings
from duprsync.dupr.errors import IntegrationError, InvalidRequestError, NotFoundError, PreconditionFailedError
from duprsync.dupr.repository import MatchRepository, RatingSnapshotRepository
from duprsync.models import utc_now
from duprsync.telemetry.metrics import record_rating_sync

logger = logging.getLogger(__name__)

SOURCE_WEBHOOK = "webhook"
SOURCE_SYNC = "sync"
SOURCE_MANUAL = "manual"


async def apply_rating_snapshot(
    session: AsyncSession,
    ratings: PlayerRatings,
    source: str,
    last_match_id: Optional[str] = None,
) -> Optional[str]:
    """
    Upsert the snapshot for ``ratings.dupr_id`` and copy ratings onto the linked profile.

    Only known values are written, so an "NR" rating never clears a stored one.

    Returns:
        Id of the updated profile, or None when no profile is linked.
    """
    snapshot_fields = {"source": source}
    if ratings.name:
        snapshot_fields["name"] = ratings.name
    if ratings.doubles is not None:
        snapshot_fields["doubles_rating"] = ratings.doubles
    if ratings.singles is not None:
        snapshot_fields["singles_rating"] = ratings.singles
    if ratings.doubles_reliability is not None:
        snapshot_fields["doubles_reliability"] = ratings.doubles_reliability
    if ratings.singles_reliability is not None:
        snapshot_fields["singles_reliability"] = ratings.singles_reliability
    if last_match_id is not None:
        snapshot_fields["last_match_id"] = str(last_match_id)

    await RatingSnapshotRepository(session).save(ratings.dupr_id, **snapshot_fields)

    repo = MatchRepository(session)
    profile = await repo.find_profile_by_dupr_id(ratings.dupr_id)
    if profile is None:
        logger.info("[DUPR_SYNC] No profile linked to updated DUPR id")
        return None

    profile_id = profile.id
    profile_fields = {"dupr_last_sync_at": utc_now(), "dupr_last_sync_source": source}
    if ratings.doubles is not None:
        profile_fields["dupr_doubles_rating"] = ratings.doubles
    if ratings.singles is not None:
        profile_fields["dupr_singles_rating"] = ratings.singles
    if ratings.doubles_reliability is not None:
        profile_fields["dupr_doubles_reliability"] = ratings.doubles_reliability
    if ratings.singles_reliability is not None:
        profile_fields["dupr_singles_reliability"] = ratings.singles_reliability

    await repo.update_profile(profile_id, **profile_fields)
    return profile_id


async def sync_ratings(
    session: AsyncSession,
    settings: Settings,
    client: DuprClient,
    token_provider: DuprTokenProvider,
    sleep=asyncio.sleep,
) -> dict:
    """Daily sweep over every linked profile. One player's failure never stops the sweep."""
    token = await token_provider.get_token()
    if not token:
        logger.error("[DUPR_SYNC] Failed to get API token, skipping rating sync")
        record_rating_sync("token_unavailable")
        return {"status": "token_unavailable", "updated": 0, "failed": 0}

    profiles = await MatchRepository(session).list_linked_profiles()
    if not profiles:
        logger.info("[DUPR_SYNC] No profiles with linked DUPR accounts")
        return {"status": "ok", "updated": 0, "failed": 0, "unchanged": 0}

    targets = [(p.id, p.dupr_id) for p in profiles]
    logger.info(f"[DUPR_SYNC] Syncing ratings for {len(targets)} linked profiles")

    updated = failed = unchanged = 0
    for index, (profile_id, dupr_id) in enumerate(targets):
        if index:
            await sleep(settings.DUPR_INTER_CALL_DELAY_MS / 1000)
        try:
            ratings = await client.lookup_player(dupr_id, token)
            if ratings is None:
                logger.warning(f"[DUPR_SYNC] No DUPR results for profile {profile_id}")
                failed += 1
                continue
            if not ratings.has_rating:
                unchanged += 1
                continue
            await apply_rating_snapshot(session, ratings, SOURCE_SYNC)
            updated += 1
        except Exception as e:
            logger.error(f"[DUPR_SYNC] Error syncing ratings for profile {profile_id}: {e}")
            await session.rollback()
            failed += 1

    record_rating_sync("updated", updated)
    record_rating_sync("failed", failed)
    record_rating_sync("unchanged", unchanged)
    logger.info(f"[DUPR_SYNC] Complete: {updated} updated, {failed} failed, {unchanged} unrated")
    return {"status": "ok", "updated": updated, "failed": failed, "unchanged": unchanged}


async def _load_linked_profile(session: AsyncSession, user_id: str):
    profile = await MatchRepository(session).get_profile(user_id)
    if profile is None:
        raise NotFoundError("User not found")
    if not profile.dupr_id:
        raise PreconditionFailedError("No DUPR account linked")
    return profile


async def refresh_player_rating(
    session: AsyncSession,
    settings: Settings,
    client: DuprClient,
    token_provider: DuprTokenProvider,
    user_id: str,
) -> dict:
    """Manual refresh for one player, limited to one lookup per cooldown window."""
    profile = await _load_linked_profile(session, user_id)
    dupr_id = profile.dupr_id

    if profile.dupr_last_sync_at is not None:
        elapsed = (utc_now() - profile.dupr_last_sync_at).total_seconds()
        if elapsed < settings.DUPR_REFRESH_COOLDOWN_SECONDS:
            remaining = int(settings.DUPR_REFRESH_COOLDOWN_SECONDS - elapsed) + 1
            return {
                "success": False,
                "rateLimited": True,
                "message": f"Please wait {remaining} seconds before refreshing again",
            }

    token = await token_provider.require_token()

    try:
        ratings = await client.lookup_player(dupr_id, token)
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"[DUPR_SYNC] Player lookup failed for {user_id}: {e}")
        record_rating_sync("failed")
        raise IntegrationError("Unable to fetch DUPR rating. Please try again later.")

    if ratings is None:
        record_rating_sync("failed")
        raise IntegrationError("No player data returned from DUPR")

    await apply_rating_snapshot(session, ratings, SOURCE_MANUAL)
    record_rating_sync("updated")
    logger.info(f"[DUPR_SYNC] Manual refresh complete for {user_id}")
    return {
        "success": True,
        "doublesRating": ratings.doubles,
        "singlesRating": ratings.singles,
        "doublesReliability": ratings.doubles_reliability,
        "singlesReliability": ratings.singles_reliability,
    }


async def subscribe_player(
    session: AsyncSession,
    client: DuprClient,
    token_provider: DuprTokenProvider,
    user_id: str,
) -> dict:
    """Register rating-change webhooks for one linked player."""
    profile = await _load_linked_profile(session, user_id)
    token = await token_provider.require_token()

    if not await client.subscribe_rating_changes(profile.dupr_id, token):
        raise IntegrationError("Subscription request failed")

    await _mark_subscribed(session, user_id)
    logger.info(f"[DUPR_SYNC] Subscribed {user_id} to rating changes")
    return {"success": True, "subscribedCount": 1}


async def _mark_subscribed(session: AsyncSession, user_id: str) -> None:
    await MatchRepository(session).update_profile(user_id, dupr_subscribed=True, dupr_subscribed_at=utc_now())


async def subscribe_all_players(
    session: AsyncSession,
    settings: Settings,
    client: DuprClient,
    token_provider: DuprTokenProvider,
    sleep=asyncio.sleep,
) -> dict:
    """
    Register rating-change webhooks for every linked profile, one id per call.

    A rejected id is reported and the sweep moves on.
    """
    profiles = await MatchRepository(session).list_linked_profiles()
    targets = [(p.id, p.dupr_id) for p in profiles]
    if not targets:
        return {"success": True, "message": "No users with DUPR IDs found", "subscribedCount": 0, "totalUsers": 0}

    token = await token_provider.require_token()
    logger.info(f"[DUPR_SYNC] Bulk subscribing {len(targets)} linked profiles")

    subscribed = 0
    errors = []
    for index, (profile_id, dupr_id) in enumerate(targets):
        if index:
            await sleep(settings.DUPR_SUBSCRIBE_DELAY_MS / 1000)
        if await client.subscribe_rating_changes(dupr_id, token):
            await _mark_subscribed(session, profile_id)
            subscribed += 1
        else:
            errors.append(f"{profile_id}: subscription rejected")

    logger.info(f"[DUPR_SYNC] Bulk subscription complete: {subscribed}/{len(targets)} subscribed")
    result = {
        "success": not errors,
        "message": f"Subscribed {subscribed} of {len(targets)} users",
        "subscribedCount": subscribed,
        "totalUsers": len(targets),
    }
    if errors:
        result["errors"] = errors
    return result


async def get_subscriptions(client: DuprClient, token_provider: DuprTokenProvider):
    """Rating-change subscriptions currently registered at DUPR."""
    token = await token_provider.require_token()
    try:
        return await client.list_rating_subscriptions(token)
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"[DUPR_SYNC] Failed to fetch subscriptions: {e}")
        raise IntegrationError("Failed to fetch subscriptions")


async def check_connection(settings: Settings, token_provider: DuprTokenProvider) -> dict:
    """Credential exchange health check. Reports the configured environment, never the token."""
    env = settings.dupr_environment
    if await token_provider.get_token():
        return {"success": True, "environment": env}
    return {"success": False, "environment": env, "error": "Failed to get token - check credentials"}


def is_dupr_plus_active(subscriptions, now_ms: int) -> bool:
    """Active when any subscription says so or has not yet expired."""
    for subscription in subscriptions or []:
        if not isinstance(subscription, dict):
            continue
        if subscription.get("status") == "active":
            return True
        expires_at = subscription.get("expiresAt")
        if isinstance(expires_at, (int, float)) and expires_at > now_ms:
            return True
    return False


async def update_player_subscriptions(session: AsyncSession, user_id: str, subscriptions: list) -> dict:
    """Store the DUPR+ subscriptions reported for a player and derive the active flag."""
    repo = MatchRepository(session)
    if await repo.get_profile(user_id) is None:
        raise NotFoundError("User not found")

    active = is_dupr_plus_active(subscriptions, int(time.time() * 1000))
    await repo.update_profile(
        user_id,
        dupr_subscriptions=list(subscriptions or []),
        dupr_plus_active=active,
        dupr_plus_verified_at=utc_now(),
    )
    logger.info(f"[DUPR+] Subscription status for {user_id}: active={active}")
    return {"success": True, "duprPlusActive": active}


async def link_dupr_account(
    session: AsyncSession,
    client: DuprClient,
    token_provider: DuprTokenProvider,
    user_id: str,
    dupr_id: str,
) -> dict:
    """
    Link a profile to a DUPR id and, when the id is new or changed, subscribe
    it to rating changes.

    The subscription is best effort: the link is kept when DUPR is unreachable
    and ``subscribed`` reports the outcome.
    """
    dupr_id = (dupr_id or "").strip()
    if not dupr_id:
        raise InvalidRequestError("Missing duprId")

    repo = MatchRepository(session)
    profile = await repo.get_profile(user_id)
    if profile is None:
        raise NotFoundError("User not found")

    if profile.dupr_id == dupr_id:
        return {"success": True, "changed": False, "subscribed": bool(profile.dupr_subscribed)}

    await repo.update_profile(user_id, dupr_id=dupr_id, dupr_subscribed=False, dupr_subscribed_at=None)

    token = await token_provider.get_token()
    if not token:
        logger.error(f"[DUPR_SYNC] Auto-subscribe for {user_id} skipped: could not get token")
        return {"success": True, "changed": True, "subscribed": False}

    subscribed = await client.subscribe_rating_changes(dupr_id, token)
    if subscribed:
        await _mark_subscribed(session, user_id)
        logger.info(f"[DUPR_SYNC] Auto-subscribed {user_id} to rating changes")
    else:
        logger.error(f"[DUPR_SYNC] Auto-subscribe failed for {user_id}")
    return {"success": True, "changed": True, "subscribed": subscribed}
