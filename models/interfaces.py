"""
核心接口定义

定义系统中各个模块的抽象接口，确保模块间的解耦和可扩展性。
"""

from abc import ABC, abstractmethod
from typing import List, Optional
from .data_models import Config, Detection, Frame


class IConfigManager(ABC):
    """配置管理器接口

    定义配置管理的标准接口，支持配置文件和命令行参数处理。
    """

    @abstractmethod
    def load_config(self) -> Config:
        """加载配置信息

        Returns:
            Config: 配置对象
        """
        pass

    @abstractmethod
    def get_confidence_threshold(self) -> float:
        """获取置信度阈值

        Returns:
            float: 置信度阈值
        """
        pass


class IFrameSource(ABC):
    """帧源接口

    按需提供当前帧，帧尚未就绪时返回 None。
    """

    @abstractmethod
    def current_frame(self) -> Optional[Frame]:
        """获取当前帧

        Returns:
            Optional[Frame]: 当前帧，未就绪时返回 None
        """
        pass

    @abstractmethod
    def release(self) -> None:
        """释放帧源资源"""
        pass


class IGeneralDetector(ABC):
    """通用物体检测器接口"""

    @abstractmethod
    def load_model(self) -> None:
        """加载检测模型

        Raises:
            ModelLoadError: 模型加载失败时抛出
        """
        pass

    @abstractmethod
    def detect(self, frame: Frame, score_threshold: float) -> List[Detection]:
        """检测帧中的物体

        Args:
            frame: 输入帧
            score_threshold: 置信度阈值，低于阈值的结果被排除

        Returns:
            List[Detection]: 检测结果
        """
        pass

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        """模型是否已加载"""
        pass


class IModelBlobStore(ABC):
    """模型数据存储接口

    以不透明字符串为键保存和读取模型二进制数据。
    """

    @abstractmethod
    def save(self, key: str, blob: bytes) -> None:
        """保存模型数据

        Raises:
            PersistenceError: 保存失败时抛出
        """
        pass

    @abstractmethod
    def load(self, key: str) -> bytes:
        """读取模型数据

        Raises:
            NotFoundError: 键不存在时抛出
        """
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """键是否存在"""
        pass
