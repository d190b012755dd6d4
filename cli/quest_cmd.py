"""
CLI 命令：questline
运维入口：物化周期任务、重跑路线图、重试降级里程碑、查看 incident
"""
import sys
from datetime import date
from pathlib import Path
from typing import Optional

import click

# 添加项目根目录到 sys.path，以便导入 core 模块
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.append(str(project_root))

from core.exceptions import QuestlineError
from core.incident_log import IncidentKind
from core.logger import setup_logging
from core.quest_service import get_quest_service
from scheduler.daily_tick import daily_tick

DATE_TYPE = click.DateTime(formats=["%Y-%m-%d"])


def _as_date(value) -> Optional[date]:
    return value.date() if value is not None else None


@click.group()
@click.option("--quiet", is_flag=True, help="只输出结果，不写日志文件")
def cli(quiet: bool):
    """Questline 进度引擎运维命令"""
    if not quiet:
        setup_logging()


@cli.command()
@click.option("--date", "as_of", type=DATE_TYPE, default=None, help="物化截止日期 (YYYY-MM-DD)，默认今天")
def materialize(as_of):
    """物化所有活跃的周期规则（可重复执行）"""
    try:
        report = get_quest_service().run_materializer(_as_date(as_of))
    except QuestlineError as e:
        raise click.ClickException(e.get_user_message())

    click.echo(f"📅 截止日期: {report.as_of.isoformat()}")
    click.echo(f"✅ 新建任务: {report.tasks_created}  (重复跳过 {report.duplicates})")
    click.echo(f"📋 处理规则: {report.rules_processed}")
    if report.failed_rules:
        click.echo(f"❌ 失败规则 ({len(report.failed_rules)}):", err=True)
        for rule_id, error in report.failed_rules.items():
            click.echo(f"  - {rule_id}: {error}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("goal_id")
def roadmap(goal_id: str):
    """同步执行一个目标的路线图流水线"""
    service = get_quest_service()
    click.echo(f"🧭 生成路线图: {goal_id}")
    try:
        result = service.pipeline.run(goal_id)
    except QuestlineError as e:
        raise click.ClickException(e.get_user_message())

    click.echo(f"状态: {result.roadmap_status.value}")
    click.echo(f"里程碑: {result.milestones}  每日任务: {result.tasks_created}")
    if result.degraded:
        click.echo(f"⚠️ 任务生成降级: {result.error}")
    elif result.error:
        click.echo(f"❌ {result.error}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--user", "user_id", default=None, help="只处理该用户的里程碑")
def redrive(user_id: Optional[str]):
    """重试所有 task_generation=failed 的里程碑"""
    report = get_quest_service().redrive_degraded(user_id)
    if not report.attempted:
        click.echo("ℹ️ 没有需要重试的里程碑")
        return
    click.echo(f"🔁 重试 {len(report.attempted)} 个里程碑，成功 {len(report.succeeded)}")
    for milestone_id, error in report.failed.items():
        click.echo(f"  - {milestone_id}: {error}", err=True)


@cli.command()
@click.option("--date", "as_of", type=DATE_TYPE, default=None, help="tick 日期 (YYYY-MM-DD)")
def tick(as_of):
    """执行每日维护（遵循 system.yaml 暂停模式）"""
    report = daily_tick(_as_date(as_of))
    if not report.ran:
        click.echo(f"⏸️ {report.reason}")
        return
    click.echo(f"✅ 新建任务: {report.materialization.tasks_created}")
    click.echo(f"⌛ 过期流水线: {len(report.expired_goals)}")
    if report.redrive is not None:
        click.echo(f"🔁 降级重试: {len(report.redrive.succeeded)}/{len(report.redrive.attempted)}")


@cli.command()
@click.option(
    "--kind",
    type=click.Choice([k.value for k in IncidentKind]),
    default=None,
    help="按类型过滤",
)
@click.option("--all", "include_resolved", is_flag=True, help="包含已解决的 incident")
@click.option("--limit", default=20, show_default=True)
def incidents(kind: Optional[str], include_resolved: bool, limit: int):
    """列出最近的 incident"""
    entries = get_quest_service().reporter.query(
        kind=IncidentKind(kind) if kind else None,
        include_resolved=include_resolved,
        limit=limit,
    )
    if not entries:
        click.echo("ℹ️ 没有 incident")
        return
    for incident in entries:
        marker = "✔" if incident.resolved else "•"
        click.echo(
            f"{marker} {incident.timestamp[:19]} {incident.kind} "
            f"{incident.entity}={incident.entity_id}: {incident.message}"
        )


if __name__ == "__main__":
    cli()
