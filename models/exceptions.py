"""
自定义异常类定义

定义系统中使用的各种异常类，提供详细的错误信息和错误处理机制。
检测循环中的单帧错误和训练中的单轮错误在本地被捕获并转换为日志，
只有训练前置校验错误和模型加载错误会作为用户可见的失败抛出。
"""


class ObjectDetectionError(Exception):
    """物体检测系统基础异常类

    所有系统异常的基类，提供统一的错误处理接口。
    """

    def __init__(self, message: str, error_code: str = None, suggestions: str = None):
        """初始化异常

        Args:
            message: 错误信息
            error_code: 错误代码
            suggestions: 错误恢复建议
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.suggestions = suggestions

    def __str__(self) -> str:
        """返回格式化的错误信息"""
        error_msg = f"错误: {self.message}"
        if self.error_code:
            error_msg += f" (错误代码: {self.error_code})"
        if self.suggestions:
            error_msg += f"\n建议: {self.suggestions}"
        return error_msg


class ModelLoadError(ObjectDetectionError):
    """模型加载错误

    通用检测模型或自定义模型初始化失败时抛出。
    只影响对应功能，检测循环降级为"无可用检测器"状态。
    """

    def __init__(self, model_path: str = None, details: str = None):
        if model_path:
            message = f"无法加载检测模型: {model_path}"
        else:
            message = "无法加载检测模型"

        if details:
            message += f" - {details}"

        suggestions = "请检查模型文件是否存在，或尝试重新下载模型文件"
        super().__init__(message, "MODEL_LOAD_FAILED", suggestions)


class FrameNotReadyError(ObjectDetectionError):
    """帧未就绪错误

    帧源暂时没有可用帧或帧尺寸未知时抛出，属于瞬时错误，
    以固定退避重试，不向操作者展示。
    """

    def __init__(self, details: str = None):
        message = "视频帧尚未就绪"
        if details:
            message += f": {details}"
        suggestions = "请等待摄像头初始化完成"
        super().__init__(message, "FRAME_NOT_READY", suggestions)


class InferenceError(ObjectDetectionError):
    """推理错误

    单次检测或预测失败时抛出。检测循环捕获后记录日志并在退避后继续。
    """

    def __init__(self, details: str = None, error_code: str = "INFERENCE_FAILED",
                 suggestions: str = None):
        message = "推理失败"
        if details:
            message += f": {details}"
        if suggestions is None:
            suggestions = "请检查输入帧是否有效，或尝试调整检测参数"
        super().__init__(message, error_code, suggestions)


class ModelNotReadyError(InferenceError):
    """模型未就绪错误

    在模型完成至少一次训练或成功加载之前调用预测时抛出。
    """

    def __init__(self, state: str = None):
        details = "模型尚未训练或加载"
        if state:
            details += f" (当前状态: {state})"
        super().__init__(details, "MODEL_NOT_READY", "请先训练模型或加载已保存的模型")


class ValidationError(ObjectDetectionError):
    """训练数据校验错误

    训练前置条件不满足时抛出，训练不会开始，也不会修改任何状态。
    """

    def __init__(self, details: str):
        message = f"训练数据校验失败: {details}"
        suggestions = "请为每个类别采集足够的样本图片后再开始训练"
        super().__init__(message, "TRAINING_VALIDATION_FAILED", suggestions)


class PersistenceError(ObjectDetectionError):
    """模型持久化错误

    模型保存或加载失败时抛出，不影响当前内存中正在使用的模型。
    """

    def __init__(self, key: str = None, details: str = None,
                 error_code: str = "PERSISTENCE_FAILED", suggestions: str = None):
        if key:
            message = f"模型持久化失败: {key}"
        else:
            message = "模型持久化失败"
        if details:
            message += f" - {details}"
        if suggestions is None:
            suggestions = "请检查存储目录是否有读写权限以及磁盘空间是否充足"
        super().__init__(message, error_code, suggestions)


class NotFoundError(PersistenceError):
    """模型不存在错误

    存储中不存在指定键，或对应的数据已损坏时抛出。
    """

    def __init__(self, key: str, details: str = None):
        super().__init__(
            key,
            details or "未找到已保存的模型",
            "MODEL_NOT_FOUND",
            "请先训练并保存模型，或检查模型键名是否正确"
        )
        self.key = key


class TrainingCancelledError(ObjectDetectionError):
    """训练取消错误

    训练任务在轮次边界被外部中止时抛出，部分训练结果被丢弃。
    """

    def __init__(self, epoch: int = None):
        if epoch is not None:
            message = f"训练在第 {epoch} 轮后被取消"
        else:
            message = "训练已被取消"
        super().__init__(message, "TRAINING_CANCELLED", "可以重新开始训练")


class ConfigurationError(ObjectDetectionError):
    """配置错误

    当配置文件解析或配置参数验证失败时抛出。
    """

    def __init__(self, config_issue: str, config_path: str = None):
        if config_path:
            message = f"配置错误 ({config_path}): {config_issue}"
        else:
            message = f"配置错误: {config_issue}"

        suggestions = "请检查配置文件格式是否正确，或使用默认配置"
        super().__init__(message, "CONFIGURATION_ERROR", suggestions)
