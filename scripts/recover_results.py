import asyncio
import sys
import os

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.exceptions import EngineError
from core.logger import setup_logging, logger
from db.gateway import SqlAlchemyGateway
from services.session_service import SessionService

async def recover_results():
    """Score and store results for every completed session that has none."""
    gateway = SqlAlchemyGateway()
    service = SessionService(gateway)

    sessions = await gateway.list_sessions_missing_result()
    if not sessions:
        print("No completed sessions are missing a result.")
        return

    print(f"Found {len(sessions)} completed sessions without a result.")
    recovered = 0
    for session in sessions:
        try:
            result = await service.recover_result(session)
            recovered += 1
            print(f"✅ {session.session_id}: {result.score}/{result.total_points} ({result.percentage}%)")
        except EngineError as e:
            print(f"❌ {session.session_id}: {e}")
            logger.error("Error recovering result", session_id=session.session_id, error=str(e))

    print(f"Recovered {recovered}/{len(sessions)} results.")

if __name__ == "__main__":
    if os.name == 'nt':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    setup_logging()
    asyncio.run(recover_results())
