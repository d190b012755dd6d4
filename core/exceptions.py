"""
Questline 异常定义模块。

定义系统中所有自定义异常的层次结构：
- QuestlineError: 基类，所有已知错误
- ValidationError: 输入不合法，拒绝且不改变状态
- NotFoundError: 引用的实体不存在
- ConflictError: 条件写入输掉竞争（内部重试后才会向外抛出）
- UpstreamGenerationError: Planner/Coach 生成失败
- ConfigError: 配置文件错误
- LLMError 及其子类: 模型调用相关错误
"""
from typing import Any, Dict, Optional


class QuestlineError(Exception):
    """Questline 基础异常类。

    所有系统内已知错误都继承自此类。
    捕获此类可以处理所有预期的错误情况。
    """

    status_code = 500

    def __init__(self, message: str, hint: Optional[str] = None):
        """
        Args:
            message: 错误描述
            hint: 对调用方的操作建议
        """
        super().__init__(message)
        self.message = message
        self.hint = hint

    def get_user_message(self) -> str:
        """返回用户友好的错误消息。"""
        if self.hint:
            return f"{self.message} (hint: {self.hint})"
        return self.message


class ValidationError(QuestlineError):
    """输入格式错误，直接拒绝。"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(QuestlineError):
    """引用的实体不存在（或不属于当前用户）。"""

    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(QuestlineError):
    """条件写入失败：持久化状态已不是读取时看到的状态。

    由拥有该写入的组件重新执行 read-decide-write 循环，
    超过重试上限后才向调用方抛出。
    """

    status_code = 409

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected: Optional[Dict[str, Any]] = None,
        actual: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            f"Conditional write on {entity} {entity_id} lost a race",
            hint="re-read the record and retry",
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected or {}
        self.actual = actual or {}


class UpstreamGenerationError(QuestlineError):
    """Planner/Coach 生成失败（错误、超时或返回内容不可用）。

    终态失败记录为降级状态，不会通过任务更新接口抛给用户。
    """

    status_code = 502

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message, hint="generation can be re-triggered later")
        self.stage = stage


class ConfigError(QuestlineError):
    """配置文件错误。

    当配置文件缺失、格式错误或内容非法时抛出。
    """

    def __init__(self, message: str, config_path: Optional[str] = None):
        hint = f"请检查配置文件: {config_path}" if config_path else "请检查配置文件格式"
        super().__init__(message, hint)
        self.config_path = config_path


class LLMError(UpstreamGenerationError):
    """LLM 调用相关错误的基类，包含调用上下文信息。"""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        self.provider = provider or "unknown"
        self.model_name = model_name or "unknown"
        self.endpoint = endpoint
        super().__init__(f"[{self.provider}/{self.model_name}] {message}")

    def get_user_message(self) -> str:
        base = f"模型调用失败 ({self.provider}/{self.model_name}): {self.message}"
        if self.hint:
            return f"{base} (hint: {self.hint})"
        return base


class LLMConnectionError(LLMError):
    """无法连接到 LLM 服务。"""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        super().__init__("无法连接到模型服务", provider, model_name, endpoint)
        if provider == "ollama":
            self.hint = "请确保 Ollama 正在运行 (ollama serve)"
        else:
            self.hint = "请检查网络连接或 API 端点配置"


class LLMAuthError(LLMError):
    """LLM 鉴权失败。"""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        super().__init__("模型鉴权失败", provider, model_name, endpoint)
        self.hint = "请检查 API Key 是否正确配置"


class LLMTimeoutError(LLMError):
    """LLM 调用超时。"""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout_seconds: Optional[float] = None
    ):
        message = "模型调用超时"
        if timeout_seconds:
            message = f"模型调用超时 ({timeout_seconds}秒)"
        super().__init__(message, provider, model_name, endpoint)
        self.timeout_seconds = timeout_seconds
        self.hint = "可能是网络慢或模型响应时间长，请稍后重试"


class LLMRateLimitError(LLMError):
    """LLM 请求频率限制。"""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__("请求频率超限", provider, model_name, endpoint)
        self.retry_after = retry_after
        self.hint = f"请在 {retry_after} 秒后重试" if retry_after else "请稍后重试"
