"""Process-wide collaborators, constructed once at startup and injected."""

from __future__ import annotations

from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine
import structlog

from .clients import CloudflareClient, GitHubSourceControl, RailwayClient
from .codegen.client import HTTPCodeGenerationClient
from .config import Settings
from .database import create_engine, create_session_factory
from .progress import ProgressBroadcaster
from .resilience import BreakerRegistry, RetryPolicy
from .store import ProjectStore

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    redis: Redis
    engine: AsyncEngine
    breakers: BreakerRegistry
    broadcaster: ProgressBroadcaster
    store: ProjectStore
    codegen: HTTPCodeGenerationClient
    compute: RailwayClient
    edge: CloudflareClient
    source_control: GitHubSourceControl

    async def close(self) -> None:
        await self.broadcaster.stop()
        for client in (self.codegen, self.compute, self.edge, self.source_control):
            await client.close()
        await self.redis.aclose()
        await self.engine.dispose()
        logger.info("services_closed")


def build_services(settings: Settings) -> Services:
    """Wire every adapter to the shared breaker registry, store and redis connection."""
    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    engine = create_engine(settings.database_url)
    store = ProjectStore(create_session_factory(engine))
    breakers = BreakerRegistry.from_settings(settings)
    retry = RetryPolicy.from_settings(settings)

    return Services(
        settings=settings,
        redis=redis,
        engine=engine,
        breakers=breakers,
        broadcaster=ProgressBroadcaster(redis),
        store=store,
        codegen=HTTPCodeGenerationClient(
            settings.codegen_url,
            api_key=settings.codegen_api_key,
            timeout=settings.codegen_timeout,
            breaker=breakers.get("codegen", call_timeout=settings.codegen_timeout),
            retry=retry,
        ),
        compute=RailwayClient(
            settings.railway_api_url,
            settings.railway_api_token,
            breaker=breakers.get("railway-api", call_timeout=60.0),
            retry=retry,
        ),
        edge=CloudflareClient(
            settings.cloudflare_api_url,
            settings.cloudflare_api_token,
            account_id=settings.cloudflare_account_id,
            zone_id=settings.cloudflare_zone_id,
            kv_namespace_id=settings.cloudflare_kv_namespace_id,
            breaker=breakers.get("cloudflare-api"),
            retry=retry,
        ),
        source_control=GitHubSourceControl(
            store,
            api_url=settings.github_api_url,
            breaker=breakers.get("github-api"),
            retry=retry,
        ),
    )
