"""
Import job: fetch the following list, store one connection per account,
fan out one resolve job per connection.

The refresh job runs the same code against an existing import; connection
upserts make a refresh idempotent.
"""

from typing import TYPE_CHECKING

from app.features.social_graph.domain import SOURCE_PLATFORM_TWITTER
from app.features.social_graph.jobs.payloads import ImportJobPayload, ResolveJobPayload
from app.features.social_graph.repository.connection_repository import ConnectionRepository
from app.features.social_graph.repository.import_repository import ImportRepository
from app.infrastructure.observability.logging import get_logger

if TYPE_CHECKING:
    from app.features.social_graph.context import JobContext

logger = get_logger(__name__)


async def process_import_job(payload: ImportJobPayload, context: "JobContext") -> None:
    """
    Run one import.

    Any failure marks the import failed and re-raises so the dispatcher can
    retry. Connections created before the failure are kept.
    """
    import_id = payload.import_id

    try:
        await ImportRepository.mark_processing(import_id)
        following = await context.source_client.fetch_following(
            payload.source_account_id, payload.access_token
        )
        await ImportRepository.set_total(import_id, len(following))

        connection_ids = await ConnectionRepository.upsert_unresolved(
            import_id, SOURCE_PLATFORM_TWITTER, following
        )
        for connection_id in connection_ids:
            await context.dispatcher.enqueue(
                "resolve",
                ResolveJobPayload(connection_id=connection_id, import_id=import_id),
            )

        await ImportRepository.mark_complete(import_id)
        logger.info(
            "Import finished",
            import_id=import_id,
            user_id=payload.user_id,
            total_accounts=len(following),
        )

    except Exception as e:
        logger.error(
            "Import job failed",
            import_id=import_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        await ImportRepository.mark_failed(import_id)
        raise


async def run_import(data: dict, context: "JobContext") -> None:
    await process_import_job(ImportJobPayload.model_validate(data), context)


async def run_refresh(data: dict, context: "JobContext") -> None:
    payload = ImportJobPayload.model_validate(data)
    logger.info("Refreshing social graph", import_id=payload.import_id)
    await process_import_job(payload, context)
