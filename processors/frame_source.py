"""
帧源模块

提供检测循环使用的帧源：摄像头或视频文件，以及单张图片。
帧尚未就绪时返回 None，由检测循环按固定退避重试。
"""

import logging
import os
import threading
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

from models.data_models import Frame
from models.exceptions import ConfigurationError
from models.interfaces import IFrameSource
from utils.image_ops import read_image_file


class CameraFrameSource(IFrameSource):
    """摄像头/视频帧源

    基于 cv2.VideoCapture，source 为数字时按摄像头编号打开，否则按视频文件路径打开。
    """

    SUPPORTED_FORMATS = {'.mp4', '.avi', '.mov', '.mkv'}

    def __init__(self, source: Union[int, str] = 0, width: int = 1280, height: int = 720,
                 loop_video: bool = False):
        """初始化帧源

        Args:
            source: 摄像头编号或视频文件路径
            width: 期望的采集宽度（仅对摄像头生效）
            height: 期望的采集高度（仅对摄像头生效）
            loop_video: 视频文件播放结束后是否从头开始

        Raises:
            ConfigurationError: 视频文件不存在或格式不支持时抛出
        """
        self.logger = logging.getLogger(__name__)
        self.source = self._parse_source(source)
        self.width = width
        self.height = height
        self.loop_video = loop_video
        self.cap: Optional[cv2.VideoCapture] = None
        self._lock = threading.Lock()

        if isinstance(self.source, str):
            self._validate_video_file(self.source)

    @staticmethod
    def _parse_source(source: Union[int, str]) -> Union[int, str]:
        if isinstance(source, str) and source.isdigit():
            return int(source)
        return source

    def _validate_video_file(self, path: str) -> None:
        """检查视频文件是否存在、格式是否支持"""
        if not os.path.isfile(path):
            raise ConfigurationError(f"视频文件不存在: {path}")
        if Path(path).suffix.lower() not in self.SUPPORTED_FORMATS:
            raise ConfigurationError(
                f"不支持的视频格式: {path}，支持格式: {', '.join(sorted(self.SUPPORTED_FORMATS))}"
            )

    def open(self) -> bool:
        """打开帧源

        Returns:
            bool: 打开成功返回 True
        """
        with self._lock:
            if self.cap is not None and self.cap.isOpened():
                return True

            self.cap = cv2.VideoCapture(self.source)
            if not self.cap.isOpened():
                self.logger.warning(f"无法打开帧源: {self.source}")
                self.cap.release()
                self.cap = None
                return False

            if isinstance(self.source, int):
                self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
                self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)

            actual_width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            actual_height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            self.logger.info(f"帧源已打开: {self.source} ({actual_width}x{actual_height})")
            return True

    def current_frame(self) -> Optional[Frame]:
        """读取当前帧

        Returns:
            Optional[Frame]: 当前帧；帧源未打开、读取失败或尺寸未知时返回 None
        """
        if not self.open():
            return None

        with self._lock:
            ret, pixels = self.cap.read()
            if not ret and self.loop_video and isinstance(self.source, str):
                self.cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                ret, pixels = self.cap.read()

        if not ret or pixels is None or pixels.size == 0:
            return None

        frame = Frame.from_array(pixels)
        if frame.width <= 0 or frame.height <= 0:
            return None
        return frame

    def release(self) -> None:
        """释放视频资源"""
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None

    def __enter__(self):
        """上下文管理器入口"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """上下文管理器出口，自动释放资源"""
        self.release()


class ImageFrameSource(IFrameSource):
    """静态图片帧源

    每次返回同一张图片，适用于单次检测和测试。
    """

    def __init__(self, image: Optional[Union[str, np.ndarray]] = None):
        """初始化图片帧源

        Args:
            image: 图片路径或像素数组，None 表示尚无图片
        """
        self._frame: Optional[Frame] = None
        if image is not None:
            self.set_image(image)

    def set_image(self, image: Union[str, np.ndarray]) -> None:
        """替换当前图片"""
        if isinstance(image, str):
            try:
                image = read_image_file(image)
            except ValueError as e:
                raise ConfigurationError(str(e)) from e
        self._frame = Frame.from_array(image)

    def current_frame(self) -> Optional[Frame]:
        frame = self._frame
        if frame is None or frame.width <= 0 or frame.height <= 0:
            return None
        return frame

    def release(self) -> None:
        self._frame = None
