"""
Daily Tick Scheduler for Questline.

Handles the once-a-day maintenance run and system mode checks.

每日 tick 依次执行:
- 周期任务物化 (RecurrenceMaterializer.run_once)
- 过期的 generating 路线图标记为 failed
- 降级里程碑的任务生成重试（可配置）

重复执行是安全的：每一步都是幂等的。
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import yaml

from core.config_manager import config
from core.logger import get_logger
from core.paths import CONFIG_DIR
from core.quest_service import QuestService, get_quest_service
from core.recurrence import MaterializationReport
from core.roadmap_pipeline import RedriveReport

logger = get_logger("scheduler")

SYSTEM_CONFIG_PATH = CONFIG_DIR / "system.yaml"


def load_system_config() -> Dict[str, Any]:
    """
    Load system configuration.
    On missing or unreadable file, returns normal mode.
    """
    if not SYSTEM_CONFIG_PATH.exists():
        return {"current_pause_mode": "normal"}
    try:
        with open(SYSTEM_CONFIG_PATH, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"Unreadable system config {SYSTEM_CONFIG_PATH}: {e}")
    return {"current_pause_mode": "normal"}


def get_pause_mode() -> str:
    """
    Get current system pause mode.

    Returns:
        One of: 'normal', 'soft_pause', 'hard_pause', 'maintenance'
    """
    sys_config = load_system_config()
    return sys_config.get("current_pause_mode", "normal")


def can_proceed() -> Tuple[bool, str]:
    """
    Check if system can proceed with normal operations.

    Returns:
        Tuple of (can_proceed: bool, reason: str)
    """
    mode = get_pause_mode()

    if mode == "normal":
        return True, "System running normally"
    elif mode == "soft_pause":
        return False, "Soft pause: new tasks suspended, logging continues"
    elif mode == "hard_pause":
        return False, "Hard pause: all I/O stopped"
    elif mode == "maintenance":
        return False, "Maintenance mode: manual repair only"
    else:
        return True, f"Unknown mode '{mode}', defaulting to normal"


@dataclass
class TickReport:
    as_of: date
    ran: bool
    reason: str
    materialization: Optional[MaterializationReport] = None
    expired_goals: List[str] = field(default_factory=list)
    redrive: Optional[RedriveReport] = None


def daily_tick(as_of: Optional[date] = None, service: Optional[QuestService] = None) -> TickReport:
    """
    执行每日维护。

    Args:
        as_of: 物化截止日期（含），默认今天
        service: 默认使用进程级 QuestService

    Returns:
        TickReport；暂停模式下 ran=False 且不做任何写入
    """
    as_of = as_of or date.today()
    can_run, reason = can_proceed()
    if not can_run:
        logger.warning(f"[Scheduler] {reason}")
        return TickReport(as_of=as_of, ran=False, reason=reason)

    service = service or get_quest_service()
    report = TickReport(as_of=as_of, ran=True, reason=reason)

    report.materialization = service.run_materializer(as_of)
    report.expired_goals = service.expire_stale_pipelines()
    if config.REDRIVE_DEGRADED_ON_TICK:
        report.redrive = service.redrive_degraded()

    logger.info(
        f"Daily tick {as_of}: created={report.materialization.tasks_created} "
        f"expired={len(report.expired_goals)}"
    )
    return report
