"""
ベンダーのブロックリスト。
スーパー管理者がブロックしたベンダーは新規のカート追加を受け付けない。
"""

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import BlockedVendor

logger = logging.getLogger(__name__)


class BlockedVendorRepository:
    """blocked_vendors テーブルへのアクセスをまとめたリポジトリ"""

    def __init__(self, db: Session):
        self.db = db

    def is_blocked(self, vendor_id: int) -> bool:
        row = self.db.scalar(select(BlockedVendor.id).where(BlockedVendor.vendor_id == vendor_id))
        return row is not None

    def blocked_ids(self) -> list[int]:
        return list(self.db.scalars(select(BlockedVendor.vendor_id).order_by(BlockedVendor.vendor_id)))

    def block(self, vendor_id: int) -> None:
        """ブロックする（既にブロック済みなら何もしない）"""
        if self.is_blocked(vendor_id):
            return
        self.db.add(BlockedVendor(vendor_id=vendor_id))
        try:
            self.db.commit()
        except IntegrityError:
            # 同時に別リクエストがブロック済み
            self.db.rollback()
        logger.info("Vendor %s blocked", vendor_id)

    def unblock(self, vendor_id: int) -> None:
        self.db.execute(delete(BlockedVendor).where(BlockedVendor.vendor_id == vendor_id))
        self.db.commit()
        logger.info("Vendor %s unblocked", vendor_id)
