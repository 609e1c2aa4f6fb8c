from typing import Dict, Optional

from core.logger import logger
from engine.state import AssessmentConfig
from services.persistence import PersistenceGateway
from services.session_service import SessionService


async def monitor_sessions(gateway: PersistenceGateway, session_service: SessionService):
    """
    Periodic sweep run by the scheduler.
    Expires sessions abandoned well past their duration and finishes
    submissions that stopped between "completed" and "result written".
    """
    logger.debug("Starting session monitor scan...")

    expired = await monitor_inactive_sessions(gateway, session_service)
    recovered = await recover_missing_results(gateway, session_service)

    logger.debug("Session monitor scan completed.", expired=expired, recovered=recovered)


async def monitor_inactive_sessions(gateway: PersistenceGateway, session_service: SessionService) -> int:
    sessions = await gateway.list_active_sessions()
    assessments: Dict[str, Optional[AssessmentConfig]] = {}
    expired = 0

    for session in sessions:
        try:
            if session.assessment_id not in assessments:
                assessments[session.assessment_id] = await gateway.get_assessment(session.assessment_id)
            assessment = assessments[session.assessment_id]
            if assessment is None:
                logger.warning("Monitor: Session references a missing assessment", session_id=session.session_id)
                continue

            if await session_service.expire_if_inactive(session, assessment) is not None:
                expired += 1
        except Exception as e:
            logger.error("Monitor: Error expiring session", session_id=session.session_id, error=str(e))

    if expired:
        logger.info("Monitor: Expired inactive sessions", count=expired)
    return expired


async def recover_missing_results(gateway: PersistenceGateway, session_service: SessionService) -> int:
    sessions = await gateway.list_sessions_missing_result()
    recovered = 0

    for session in sessions:
        # A live runtime is still working on this submission
        if session_service.registry.get(session.session_id) is not None:
            continue
        try:
            await session_service.recover_result(session)
            recovered += 1
        except Exception as e:
            logger.error("Monitor: Error recovering result", session_id=session.session_id, error=str(e))

    return recovered
