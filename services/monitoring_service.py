from core.logger import logger
from services.session_registry import SessionRegistry


async def tick_sessions(registry: SessionRegistry):
    """
    Host job that runs every second.
    Drives the timers of every live orchestrator; expiry work is spawned
    as background tasks, so a slow backend never delays the other learners.
    """
    fired_total = 0
    for orchestrator in registry.live():
        try:
            fired = orchestrator.tick()
        except Exception as e:
            logger.error("Session tick failed", learner=orchestrator.learner, error=str(e))
            continue
        if fired:
            fired_total += len(fired)
            logger.debug("Timers fired", learner=orchestrator.learner, timers=fired)

    if fired_total:
        logger.debug("Tick scan completed", fired=fired_total)
    return fired_total
