"""
GameModeRegistry：唯讀的遊戲模式目錄

模式由設定檔提供（Settings.game_modes，載入時已驗證），
啟動時 publish 到資料庫；發布之後不可修改
"""
import logging
from typing import Dict, Iterable, List

from sqlalchemy.orm import Session

from database import GameMode, transactional
from models import GameModeRecord
from core.exceptions import UnknownModeError, GameModeConfigConflict

logger = logging.getLogger(__name__)


class GameModeRegistry:
    """遊戲模式目錄"""

    def __init__(self, modes: Iterable[GameMode]):
        self._modes: Dict[str, GameMode] = {}
        for mode in modes:
            if mode.id in self._modes:
                raise GameModeConfigConflict(f"Duplicate game mode id: {mode.id}")
            self._modes[mode.id] = mode

    def get(self, mode_id: str) -> GameMode:
        """
        取得模式

        異常：
            UnknownModeError: mode_id 未註冊
        """
        mode = self._modes.get(mode_id)
        if mode is None:
            raise UnknownModeError(mode_id)
        return mode

    def all(self) -> List[GameMode]:
        return list(self._modes.values())

    def ids(self) -> List[str]:
        return list(self._modes.keys())

    def __contains__(self, mode_id) -> bool:
        return mode_id in self._modes

    @transactional
    def publish(self, db: Session) -> None:
        """
        把目錄寫入 game_modes 表

        - 不存在的模式：新增
        - 已存在且內容相同：略過
        - 已存在但名稱或長度不同：GameModeConfigConflict（已發布的模式不可變更）
        """
        for mode in self._modes.values():
            record = db.query(GameModeRecord).filter(GameModeRecord.id == mode.id).first()
            if record is None:
                db.add(GameModeRecord(
                    id=mode.id,
                    name=mode.name,
                    duration_seconds=mode.duration_seconds
                ))
                logger.info(f"Published game mode {mode.id} ({mode.duration_seconds}s)")
                continue

            if record.name != mode.name or record.duration_seconds != mode.duration_seconds:
                raise GameModeConfigConflict(
                    f"Game mode {mode.id} already published as "
                    f"{record.name!r}/{record.duration_seconds}s, "
                    f"configured as {mode.name!r}/{mode.duration_seconds}s"
                )
