"""
Configuration Manager for Questline.

集中管理进度引擎的常量和配置参数。
所有经验值必须显式声明并可配置。

使用方式:
    from core.config_manager import config
    retries = config.PIPELINE_STAGE_RETRIES
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from core.paths import CONFIG_DIR

RUNTIME_CONFIG_PATH = CONFIG_DIR / "runtime.yaml"


@dataclass
class SystemConfig:
    """
    系统运行时常量配置。

    所有值均为经验值，可通过 config/runtime.yaml 覆盖。
    """

    # === Roadmap pipeline ===

    # 每个阶段的重试次数（不含首次调用）
    # 调整建议：生成服务不稳定时可增至 3
    PIPELINE_STAGE_RETRIES: int = 2

    # 指数退避的基准秒数：第 n 次重试前等待 base * 2^(n-1)
    PIPELINE_BACKOFF_SECONDS: float = 2.0

    # 整个流水线的硬超时，超时后 roadmap_status = failed
    PIPELINE_TIMEOUT_SECONDS: float = 15 * 60

    # 是否根据目标标题自动判断需要生成路线图（调用方未显式指定时）
    AUTO_ROADMAP_FOR_COMPLEX_GOALS: bool = True

    # === Progression / 乐观并发 ===

    # 条件写入冲突后重新 read-decide-write 的最大次数
    CONFLICT_RETRY_LIMIT: int = 5

    # === Coach ===

    # 单个里程碑一次最多生成的每日任务数
    COACH_MAX_TASKS: int = 14

    # === Validation ===

    MAX_TITLE_LENGTH: int = 200
    MAX_DESCRIPTION_LENGTH: int = 2000

    # === Scheduler ===

    # 每日 tick 是否顺带重试降级的里程碑任务生成
    REDRIVE_DEGRADED_ON_TICK: bool = True


def _load_runtime_config(path: Optional[Path] = None) -> dict:
    """加载运行时配置覆盖（如果存在）。"""
    target = path or RUNTIME_CONFIG_PATH
    if not target.exists():
        return {}

    try:
        with open(target, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError):
        return {}


def get_config(path: Optional[Path] = None) -> SystemConfig:
    """
    获取系统配置实例。

    优先级：runtime.yaml > 默认值
    """
    base = SystemConfig()
    overrides = _load_runtime_config(path)

    for key, value in overrides.items():
        if hasattr(base, key):
            setattr(base, key, value)

    return base


# 全局配置实例
config = get_config()
