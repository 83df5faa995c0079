"""
可训练分类器模块

在固定的标签集上构建一个小型卷积分类模型，支持多轮训练、预测、
保存和加载。样本的归一化方式与样例匹配器一致。
"""

import copy
import io
import logging
import math
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from models.data_models import Detection, DetectionSource, EpochLog, Frame, ModelState
from models.exceptions import (
    ModelNotReadyError,
    NotFoundError,
    PersistenceError,
    TrainingCancelledError,
    ValidationError
)
from models.interfaces import IModelBlobStore
from utils.image_ops import image_to_tensor
from utils.tensor_guard import TensorResourceGuard


# 序列化格式版本
FORMAT_VERSION = 1

# 每轮结束回调: (轮次序号, 损失, 准确率) -> 返回 False 表示中止
EpochCallback = Callable[[int, float, float], Optional[bool]]


class ClassifierNet(nn.Module):
    """卷积加全连接的分类网络

    输出未归一化的 logits，预测时再经过 softmax。
    """

    def __init__(self, num_classes: int, input_size: int = 224):
        super().__init__()
        self.num_classes = num_classes
        self.input_size = input_size

        self.features = nn.Sequential(
            nn.Conv2d(3, 16, kernel_size=3, padding=1),
            nn.ReLU(inplace=True),
            nn.MaxPool2d(2),
            nn.Conv2d(16, 32, kernel_size=3, padding=1),
            nn.ReLU(inplace=True),
            nn.MaxPool2d(2),
            nn.Conv2d(32, 64, kernel_size=3, padding=1),
            nn.ReLU(inplace=True),
            nn.AdaptiveAvgPool2d(4)
        )
        self.classifier = nn.Sequential(
            nn.Flatten(),
            nn.Linear(64 * 4 * 4, 64),
            nn.ReLU(inplace=True),
            nn.Dropout(0.2),
            nn.Linear(64, num_classes)
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.classifier(self.features(x))


class TrainableClassifier:
    """可训练分类器

    生命周期: 创建 -> 构建（网络结构固定，标签集冻结）-> 训练零次或多次
    -> 可选保存 -> 可选重新加载（整体替换参数和标签集）。
    至少完成一次训练或成功加载之后才能预测。
    """

    def __init__(self, input_size: int = 224, learning_rate: float = 0.001,
                 min_examples_per_class: int = 5, seed: int = 0,
                 device: Optional[str] = None):
        """初始化分类器

        Args:
            input_size: 归一化后的边长
            learning_rate: Adam 优化器学习率
            min_examples_per_class: 每个类别最少样本数
            seed: 随机种子，决定初始化参数和批次顺序
            device: 计算设备，None时自动选择
        """
        self.logger = logging.getLogger(__name__)
        self.input_size = input_size
        self.learning_rate = learning_rate
        self.min_examples_per_class = min_examples_per_class
        self.seed = seed
        self.device = device or ('cuda' if torch.cuda.is_available() else 'cpu')

        self.state = ModelState.CREATED
        self._labels: Tuple[str, ...] = ()
        self._network: Optional[ClassifierNet] = None

    @property
    def labels(self) -> List[str]:
        """冻结的有序标签集"""
        return list(self._labels)

    @property
    def is_ready(self) -> bool:
        """是否可以用于预测"""
        return self.state is ModelState.TRAINED

    def build(self, label_set: Sequence[str]) -> None:
        """构建网络并冻结标签集

        Args:
            label_set: 有序标签集

        Raises:
            ValidationError: 标签少于两个或存在重复时抛出
            RuntimeError: 模型已训练时抛出
        """
        labels = tuple(label_set)
        if len(labels) < 2:
            raise ValidationError(f"分类器至少需要 2 个类别，当前只有 {len(labels)} 个")
        if len(set(labels)) != len(labels):
            raise ValidationError(f"类别名称不能重复: {list(labels)}")
        if self.state is ModelState.TRAINED:
            raise RuntimeError("模型已完成训练，标签集不可修改")

        with torch.random.fork_rng(devices=[]):
            torch.manual_seed(self.seed)
            network = ClassifierNet(len(labels), self.input_size)

        self._network = network.to(self.device)
        self._labels = labels
        self.state = ModelState.BUILT

        parameter_count = sum(p.numel() for p in network.parameters())
        self.logger.info(f"分类器构建完成: {len(labels)} 个类别, {parameter_count} 个参数")

    def prepare_examples(self, examples_by_class: Dict[str, Sequence[np.ndarray]],
                         guard: Optional[TensorResourceGuard] = None
                         ) -> Tuple[torch.Tensor, torch.Tensor]:
        """将按类别分组的样本转换为训练张量

        Args:
            examples_by_class: 类别名称到样本图像的映射
            guard: 资源守卫，非 None 时登记生成的张量

        Returns:
            Tuple[torch.Tensor, torch.Tensor]: (样本张量 (N, 3, S, S), 标签索引 (N,))
        """
        images = []
        targets = []
        for index, label in enumerate(self._labels):
            for image in examples_by_class.get(label, ()):
                images.append(image)
                targets.append(index)

        return self._to_tensors(images, targets, guard)

    def _to_tensors(self, examples: Sequence[np.ndarray], targets: Sequence[int],
                    guard: Optional[TensorResourceGuard]) -> Tuple[torch.Tensor, torch.Tensor]:
        if not examples:
            raise ValidationError("没有可用的训练样本")

        with TensorResourceGuard("prepare") as scope:
            items = [image_to_tensor(image, self.input_size, scope) for image in examples]
            inputs = torch.stack(items)

        labels = torch.tensor(list(targets), dtype=torch.long)
        if guard is not None:
            guard.track(inputs)
            guard.track(labels)
        return inputs, labels

    def _encode_labels(self, labels: Sequence[Union[str, int]]) -> List[int]:
        """将标签名称或索引统一为索引"""
        encoded = []
        for label in labels:
            if isinstance(label, str):
                if label not in self._labels:
                    raise ValidationError(f"未知类别: {label}")
                encoded.append(self._labels.index(label))
            else:
                index = int(label)
                if not 0 <= index < len(self._labels):
                    raise ValidationError(f"类别索引超出范围: {index}")
                encoded.append(index)
        return encoded

    def split_validation(self, targets: torch.Tensor,
                         validation_fraction: float) -> Tuple[List[int], List[int]]:
        """按比例确定性地划分训练集和验证集

        每个类别末尾的 floor(样本数 * 比例) 个样本进入验证集，
        且每个类别至少保留一个训练样本。

        Args:
            targets: 标签索引
            validation_fraction: 验证集比例

        Returns:
            Tuple[List[int], List[int]]: (训练样本下标, 验证样本下标)
        """
        train_indices: List[int] = []
        val_indices: List[int] = []
        target_list = targets.tolist()

        for class_index in range(len(self._labels)):
            members = [i for i, t in enumerate(target_list) if t == class_index]
            val_count = int(len(members) * validation_fraction)
            val_count = min(val_count, max(len(members) - 1, 0))
            split_at = len(members) - val_count
            train_indices.extend(members[:split_at])
            val_indices.extend(members[split_at:])

        return sorted(train_indices), sorted(val_indices)

    def _check_counts(self, targets: torch.Tensor) -> None:
        counts = torch.bincount(targets, minlength=len(self._labels)).tolist()
        for label, count in zip(self._labels, counts):
            if count < self.min_examples_per_class:
                raise ValidationError(
                    f"类别 '{label}' 只有 {count} 个样本，至少需要 {self.min_examples_per_class} 个"
                )

    def iter_fit(self, examples: Union[torch.Tensor, Sequence[np.ndarray]],
                 labels: Union[torch.Tensor, Sequence[Union[str, int]]],
                 epochs: int = 10, batch_size: int = 16,
                 validation_fraction: float = 0.2) -> Iterator[EpochLog]:
        """逐轮训练的生成器

        每完成一轮产出一条 EpochLog。训练在网络副本上进行，
        全部轮次完成后才替换当前参数，中途放弃生成器不会留下训练了一半的模型。

        Args:
            examples: 样本张量 (N, 3, S, S) 或样本图像列表
            labels: 标签索引张量，或与样本一一对应的类别名称/索引
            epochs: 训练轮数
            batch_size: 批大小
            validation_fraction: 验证集比例

        Yields:
            EpochLog: 每轮的损失和准确率

        Raises:
            ModelNotReadyError: 模型尚未构建时抛出
            ValidationError: 样本不满足训练条件时抛出
        """
        if self._network is None:
            raise ModelNotReadyError(self.state.value)
        if epochs <= 0 or batch_size <= 0:
            raise ValidationError(f"训练轮数和批大小必须是正整数: epochs={epochs}, batch_size={batch_size}")
        if not 0.0 <= validation_fraction < 1.0:
            raise ValidationError(f"验证集比例必须在 [0, 1) 之间: {validation_fraction}")

        with TensorResourceGuard("fit") as guard:
            if isinstance(labels, torch.Tensor):
                targets = guard.track(labels.to(torch.long))
            else:
                targets = guard.track(torch.tensor(self._encode_labels(labels), dtype=torch.long))

            if isinstance(examples, torch.Tensor):
                inputs = examples
            else:
                inputs, _ = self._to_tensors(list(examples), targets.tolist(), guard)

            if inputs.shape[0] != targets.shape[0]:
                raise ValidationError(f"样本数量 ({inputs.shape[0]}) 与标签数量 ({targets.shape[0]}) 不一致")

            self._check_counts(targets)

            train_indices, val_indices = self.split_validation(targets, validation_fraction)
            train_x = guard.track(inputs[train_indices].to(self.device))
            train_y = guard.track(targets[train_indices].to(self.device))
            val_x = guard.track(inputs[val_indices].to(self.device)) if val_indices else None
            val_y = guard.track(targets[val_indices].to(self.device)) if val_indices else None

            self.logger.info(f"开始训练: {len(train_indices)} 个训练样本, "
                             f"{len(val_indices)} 个验证样本, {epochs} 轮")

            network = copy.deepcopy(self._network)
            optimizer = torch.optim.Adam(network.parameters(), lr=self.learning_rate)
            generator = torch.Generator().manual_seed(self.seed)

            for epoch in range(epochs):
                loss, accuracy = self._train_epoch(network, optimizer, train_x, train_y,
                                                   batch_size, generator)
                if not math.isfinite(loss):
                    raise FloatingPointError(f"第 {epoch + 1} 轮训练损失发散: {loss}")

                val_loss = val_accuracy = None
                if val_x is not None:
                    val_loss, val_accuracy = self._evaluate(network, val_x, val_y)

                yield EpochLog(epoch=epoch, loss=loss, accuracy=accuracy,
                               val_loss=val_loss, val_accuracy=val_accuracy)

            network.eval()
            self._network = network
            self.state = ModelState.TRAINED
            self.logger.info("训练完成")

    def _train_epoch(self, network: ClassifierNet, optimizer: torch.optim.Optimizer,
                     inputs: torch.Tensor, targets: torch.Tensor, batch_size: int,
                     generator: torch.Generator) -> Tuple[float, float]:
        """训练一轮，返回 (平均损失, 准确率)"""
        network.train()
        total = inputs.shape[0]
        order = torch.randperm(total, generator=generator).to(inputs.device)

        loss_sum = 0.0
        correct = 0
        for start in range(0, total, batch_size):
            with TensorResourceGuard("batch") as batch_guard:
                index = batch_guard.track(order[start:start + batch_size])
                batch_x = batch_guard.track(inputs[index])
                batch_y = batch_guard.track(targets[index])

                optimizer.zero_grad()
                logits = batch_guard.track(network(batch_x))
                loss = batch_guard.track(F.cross_entropy(logits, batch_y))
                loss.backward()
                optimizer.step()

                loss_sum += loss.item() * batch_x.shape[0]
                correct += int((logits.argmax(dim=1) == batch_y).sum().item())

        return loss_sum / total, correct / total

    def _evaluate(self, network: ClassifierNet, inputs: torch.Tensor,
                  targets: torch.Tensor) -> Tuple[float, float]:
        """在验证集上评估，返回 (损失, 准确率)"""
        network.eval()
        with torch.no_grad(), TensorResourceGuard("evaluate") as scope:
            logits = scope.track(network(inputs))
            loss = float(F.cross_entropy(logits, targets).item())
            accuracy = float((logits.argmax(dim=1) == targets).float().mean().item())
        return loss, accuracy

    def fit(self, examples: Union[torch.Tensor, Sequence[np.ndarray]],
            labels: Union[torch.Tensor, Sequence[Union[str, int]]],
            epochs: int = 10, batch_size: int = 16, validation_fraction: float = 0.2,
            on_epoch_end: Optional[EpochCallback] = None) -> List[EpochLog]:
        """训练模型

        Args:
            examples: 样本张量或样本图像列表
            labels: 标签
            epochs: 训练轮数
            batch_size: 批大小
            validation_fraction: 验证集比例
            on_epoch_end: 每轮结束回调 (轮次序号, 损失, 准确率)，返回 False 时中止训练

        Returns:
            List[EpochLog]: 每轮的训练日志

        Raises:
            TrainingCancelledError: 回调要求中止时抛出，当前参数保持不变
        """
        history = []
        iterator = self.iter_fit(examples, labels, epochs, batch_size, validation_fraction)
        try:
            for log in iterator:
                history.append(log)
                if on_epoch_end is not None and on_epoch_end(log.epoch, log.loss, log.accuracy) is False:
                    raise TrainingCancelledError(log.epoch + 1)
        finally:
            iterator.close()
        return history

    def predict_scores(self, images: Sequence[np.ndarray]) -> np.ndarray:
        """计算每张图像在各类别上的 softmax 概率

        Args:
            images: 图像列表

        Returns:
            np.ndarray: (N, 类别数) 的概率矩阵

        Raises:
            ModelNotReadyError: 模型未训练或加载时抛出
        """
        if not self.is_ready:
            raise ModelNotReadyError(self.state.value)

        network = self._network
        with torch.no_grad(), TensorResourceGuard("predict") as guard:
            items = [image_to_tensor(image, self.input_size, guard) for image in images]
            batch = guard.track(torch.stack(items).to(self.device))
            logits = guard.track(network(batch))
            probabilities = guard.track(F.softmax(logits, dim=1))
            return probabilities.cpu().numpy()

    def predict(self, frame: Frame, confidence_threshold: float) -> List[Detection]:
        """对帧进行分类

        Args:
            frame: 输入帧
            confidence_threshold: 置信度阈值

        Returns:
            List[Detection]: 概率超过阈值的每个类别一条整帧检测
        """
        scores = self.predict_scores([frame.pixels])[0]
        return [
            Detection(
                class_name=label,
                score=float(score),
                bbox=frame.full_extent,
                source=DetectionSource.TRAINED
            )
            for label, score in zip(self._labels, scores)
            if score > confidence_threshold
        ]

    def to_bytes(self) -> bytes:
        """将网络结构参数、权重和标签集序列化为二进制数据"""
        if not self.is_ready:
            raise ModelNotReadyError(self.state.value)

        payload = {
            'format_version': FORMAT_VERSION,
            'labels': list(self._labels),
            'input_size': self.input_size,
            'state_dict': {k: v.detach().cpu() for k, v in self._network.state_dict().items()}
        }
        buffer = io.BytesIO()
        torch.save(payload, buffer)
        return buffer.getvalue()

    def _network_from_bytes(self, blob: bytes) -> Tuple[ClassifierNet, Tuple[str, ...], int]:
        """从二进制数据恢复网络，失败时抛出 ValueError"""
        try:
            payload = torch.load(io.BytesIO(blob), map_location='cpu', weights_only=True)
        except Exception as e:
            raise ValueError(f"无法解析模型数据: {str(e)}") from e

        if not isinstance(payload, dict) or payload.get('format_version') != FORMAT_VERSION:
            raise ValueError("模型数据格式不兼容")

        labels = tuple(payload.get('labels') or ())
        input_size = payload.get('input_size')
        if len(labels) < 2 or not all(isinstance(label, str) for label in labels):
            raise ValueError("模型标签集无效")
        if not isinstance(input_size, int) or input_size <= 0:
            raise ValueError("模型输入尺寸无效")

        network = ClassifierNet(len(labels), input_size)
        try:
            network.load_state_dict(payload['state_dict'], strict=True)
        except (KeyError, RuntimeError) as e:
            raise ValueError(f"模型参数与网络结构不匹配: {str(e)}") from e

        network.eval()
        return network, labels, input_size

    def save(self, key: str, store: IModelBlobStore) -> None:
        """保存模型到外部存储

        Raises:
            ModelNotReadyError: 模型未训练或加载时抛出
            PersistenceError: 保存失败时抛出
        """
        blob = self.to_bytes()
        try:
            store.save(key, blob)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(key, str(e)) from e
        self.logger.info(f"自定义模型已保存: {key}")

    def load(self, key: str, store: IModelBlobStore) -> None:
        """从外部存储加载模型

        加载是原子的：全部成功后才同时替换参数和标签集，
        任何失败都不影响当前内存中的模型。

        Raises:
            NotFoundError: 键不存在或数据损坏时抛出
            PersistenceError: 读取失败时抛出
        """
        try:
            blob = store.load(key)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(key, str(e)) from e

        try:
            network, labels, input_size = self._network_from_bytes(blob)
        except ValueError as e:
            raise NotFoundError(key, f"模型数据已损坏: {str(e)}") from e

        self._network, self._labels, self.input_size = network.to(self.device), labels, input_size
        self.state = ModelState.TRAINED
        self.logger.info(f"自定义模型已加载: {key} ({len(labels)} 个类别)")
