from datetime import datetime
from typing import Optional
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.models.redeem_code import RedeemCode


class RedeemCodeRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, redeem_code: RedeemCode) -> RedeemCode:
        self.session.add(redeem_code)
        await self.session.flush()
        await self.session.refresh(redeem_code)
        return redeem_code

    async def get_by_code(self, code: str) -> Optional[RedeemCode]:
        result = await self.session.execute(
            select(RedeemCode).where(RedeemCode.code == code)
        )
        return result.scalar_one_or_none()

    async def consume(self, redeem_code_id: int, now: datetime) -> bool:
        # Guards are repeated in the WHERE clause so two concurrent redemptions
        # cannot both take the last use.
        result = await self.session.execute(
            update(RedeemCode)
            .where(RedeemCode.id == redeem_code_id)
            .where(RedeemCode.is_active.is_(True))
            .where(or_(RedeemCode.expires_at.is_(None), RedeemCode.expires_at > now))
            .where(or_(RedeemCode.max_uses.is_(None), RedeemCode.current_uses < RedeemCode.max_uses))
            .values(current_uses=RedeemCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
