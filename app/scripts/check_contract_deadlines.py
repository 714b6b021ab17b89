# app/scripts/check_contract_deadlines.py
# 由排程 (cron) 定期執行：python -m app.scripts.check_contract_deadlines

import asyncio
import logging

from app.core.database import AsyncSessionLocal, engine
from app.services.deadline_service import DeadlineService

logger = logging.getLogger(__name__)


async def main() -> int:
    async with AsyncSessionLocal() as session:
        sent = await DeadlineService(session).check_contract_deadlines()
    await engine.dispose()
    return sent


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(main())
