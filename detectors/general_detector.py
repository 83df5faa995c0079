"""
通用物体检测器实现

基于 ultralytics YOLO 预训练模型的多类别物体检测器，
支持模型加载、GPU/CPU自动选择和按置信度阈值过滤。
"""

import os
import logging
from typing import Dict, List, Optional
import numpy as np
import torch

from ultralytics import YOLO

from models.interfaces import IGeneralDetector
from models.data_models import Detection, DetectionSource, Frame
from models.exceptions import InferenceError, ModelLoadError


# 可以按名称自动下载的预训练模型
PRETRAINED_MODELS = {
    'yolov8n.pt', 'yolov8s.pt', 'yolov8m.pt', 'yolov8l.pt', 'yolov8x.pt',
    'yolo11n.pt', 'yolo11s.pt', 'yolo11m.pt', 'yolo11l.pt', 'yolo11x.pt'
}


class GeneralDetector(IGeneralDetector):
    """通用物体检测器类

    包装预训练的多类别检测模型，给定一帧返回置信度不低于阈值的检测结果。
    """

    def __init__(self, model_path: Optional[str] = None):
        """初始化通用检测器

        Args:
            model_path: 模型文件路径，None时使用默认模型
        """
        self.logger = logging.getLogger(__name__)

        self.model_path = model_path or "yolov8n.pt"  # 默认使用 YOLOv8 nano 模型
        self.model: Optional[YOLO] = None
        self.device = self._select_device()
        self.class_map: Dict[int, str] = {}

    def _select_device(self) -> str:
        """自动选择最佳设备（GPU/CPU）

        Returns:
            str: 设备名称 ('cuda' 或 'cpu')
        """
        if torch.cuda.is_available():
            self.logger.info("检测到 CUDA 设备，使用 GPU 加速")
            return 'cuda'

        self.logger.info("未检测到 CUDA 设备，使用 CPU")
        return 'cpu'

    def _validate_model_path(self, model_path: str) -> bool:
        """验证模型文件路径

        Args:
            model_path: 模型文件路径

        Returns:
            bool: 路径有效返回 True
        """
        # 预训练模型名称不需要检查文件存在性
        if model_path in PRETRAINED_MODELS:
            return True

        if not os.path.exists(model_path):
            return False

        return model_path.lower().endswith(('.pt', '.onnx', '.engine'))

    @property
    def is_loaded(self) -> bool:
        """模型是否已加载"""
        return self.model is not None

    def load_model(self) -> None:
        """加载 YOLO 检测模型

        Raises:
            ModelLoadError: 模型加载失败时抛出
        """
        if not self._validate_model_path(self.model_path):
            raise ModelLoadError(self.model_path, "无效的模型路径")

        try:
            self.logger.info(f"正在加载模型: {self.model_path}")
            model = YOLO(self.model_path)

            if hasattr(model.model, 'to'):
                model.model.to(self.device)

            names = getattr(model, 'names', None) or getattr(model.model, 'names', None)
            if isinstance(names, dict):
                class_map = {int(key): str(value) for key, value in names.items()}
            else:
                class_map = dict(enumerate(names or []))

        except Exception as e:
            self.logger.error(f"模型加载失败: {str(e)}")
            raise ModelLoadError(self.model_path, str(e)) from e

        self.model = model
        self.class_map = class_map
        self.logger.info(f"模型加载成功，支持 {len(self.class_map)} 个类别，使用设备: {self.device}")

    def detect(self, frame: Frame, score_threshold: float) -> List[Detection]:
        """检测帧中的物体

        Args:
            frame: 输入帧
            score_threshold: 置信度阈值

        Returns:
            List[Detection]: 置信度不低于阈值的检测结果，边界框为 (x, y, width, height)

        Raises:
            ModelLoadError: 模型未加载时抛出
            InferenceError: 推理失败时抛出
        """
        if self.model is None:
            raise ModelLoadError(self.model_path, "模型未加载，请先调用 load_model() 方法")

        try:
            with torch.no_grad():
                results = self.model(frame.pixels, conf=score_threshold,
                                     device=self.device, verbose=False)
            detections = self._parse_detection_results(results, frame)
        except Exception as e:
            raise InferenceError(f"通用检测失败: {str(e)}") from e

        # 模型内部的阈值处理与这里保持一致，低于阈值的结果在合并前排除
        return [d for d in detections if d.score >= score_threshold]

    def _parse_detection_results(self, results, frame: Frame) -> List[Detection]:
        """解析检测结果

        Args:
            results: YOLO 检测结果
            frame: 输入帧

        Returns:
            List[Detection]: 检测结果列表
        """
        detections = []

        if len(results) == 0 or results[0].boxes is None or len(results[0].boxes) == 0:
            return detections

        boxes = results[0].boxes
        xyxy = boxes.xyxy.cpu().numpy()
        confidences = boxes.conf.cpu().numpy()
        class_ids = boxes.cls.cpu().numpy().astype(int)

        for i in range(len(xyxy)):
            class_id = int(class_ids[i])
            class_name = self.class_map.get(class_id, f"class_{class_id}")

            # 边界框裁剪到帧范围内，并转换为 (x, y, width, height)
            x1, y1, x2, y2 = xyxy[i]
            x1 = float(np.clip(x1, 0, frame.width))
            y1 = float(np.clip(y1, 0, frame.height))
            x2 = float(np.clip(x2, 0, frame.width))
            y2 = float(np.clip(y2, 0, frame.height))

            detections.append(Detection(
                class_name=class_name,
                score=float(confidences[i]),
                bbox=(x1, y1, x2 - x1, y2 - y1),
                source=DetectionSource.GENERAL
            ))

        return detections

    def get_class_names(self) -> List[str]:
        """获取模型支持的类别名称"""
        return [self.class_map[key] for key in sorted(self.class_map)]

    def get_model_info(self) -> dict:
        """获取模型信息

        Returns:
            dict: 模型信息字典
        """
        if self.model is None:
            return {"status": "未加载", "model_path": self.model_path}

        return {
            "model_path": self.model_path,
            "device": self.device,
            "num_classes": len(self.class_map),
            "class_names": self.get_class_names()[:10],  # 只显示前10个类别
            "status": "已加载"
        }
