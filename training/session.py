"""
训练任务模块

校验采集的训练数据，构建新的分类器并逐轮训练，
通过进度通道和日志输出报告进度。训练成功后新模型替换当前使用的模型。
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Optional, Sequence

import numpy as np

from models.data_models import Config, TrainingResult
from models.exceptions import PersistenceError, TrainingCancelledError, ValidationError
from models.interfaces import IModelBlobStore
from training.classifier import TrainableClassifier
from training.corpus import TrainingCorpus
from utils.log_sink import LogSink, ProgressChannel
from utils.logger import log_error, log_performance
from utils.tensor_guard import TensorResourceGuard


class ActiveModelSlot:
    """当前使用的自定义模型

    训练任务写入，检测循环读取。替换是整体的，读取方要么拿到旧模型，要么拿到新模型。
    """

    def __init__(self, model: Optional[TrainableClassifier] = None):
        self._model = model
        self._lock = threading.Lock()

    def get(self) -> Optional[TrainableClassifier]:
        with self._lock:
            return self._model

    def set(self, model: Optional[TrainableClassifier]) -> None:
        if model is not None and not model.is_ready:
            raise ValueError("只能激活已训练或已加载的模型")
        with self._lock:
            self._model = model

    def clear(self) -> None:
        self.set(None)


class TrainingSession:
    """训练任务

    在事件循环中运行，每轮训练在工作线程中执行，轮次之间让出控制权，
    检测循环可以在两轮之间继续运行。支持在轮次边界取消。
    """

    def __init__(self, config: Config, active_model: ActiveModelSlot,
                 channel: Optional[ProgressChannel] = None,
                 log_sink: Optional[LogSink] = None,
                 store: Optional[IModelBlobStore] = None,
                 classifier_factory: Optional[Callable[[], TrainableClassifier]] = None):
        """初始化训练任务

        Args:
            config: 系统配置，提供训练参数和最少样本策略
            active_model: 训练成功后写入新模型的位置
            channel: 进度事件通道，关闭通道等同于取消
            log_sink: 日志行输出
            store: 模型存储，非 None 时训练成功后保存模型
            classifier_factory: 创建分类器的工厂函数
        """
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.active_model = active_model
        self.channel = channel if channel is not None else ProgressChannel()
        self.log_sink = log_sink if log_sink is not None else LogSink()
        self.store = store
        self.classifier_factory = classifier_factory or self._default_classifier
        self._cancel_event = threading.Event()
        self._running = False

    def _default_classifier(self) -> TrainableClassifier:
        return TrainableClassifier(
            input_size=self.config.input_size,
            learning_rate=self.config.learning_rate,
            min_examples_per_class=self.config.min_examples_per_class
        )

    @property
    def running(self) -> bool:
        """训练是否正在进行"""
        return self._running

    @property
    def cancel_requested(self) -> bool:
        """是否已请求取消"""
        return self._cancel_event.is_set() or self.channel.closed

    def cancel(self) -> None:
        """请求取消训练，在下一个轮次边界生效"""
        self._cancel_event.set()
        self.logger.info("已请求取消训练")

    def validate(self, snapshot: Dict[str, Sequence[np.ndarray]]) -> None:
        """校验训练数据

        在任何张量运算之前检查类别数和每个类别的样本数。

        Args:
            snapshot: 类别到样本的映射

        Raises:
            ValidationError: 校验失败时抛出
        """
        if len(snapshot) < self.config.min_classes:
            raise ValidationError(
                f"至少需要 {self.config.min_classes} 个类别，当前只有 {len(snapshot)} 个"
            )

        insufficient = [
            f"{name} ({len(examples)})"
            for name, examples in snapshot.items()
            if len(examples) < self.config.min_examples_per_class
        ]
        if insufficient:
            raise ValidationError(
                f"每个类别至少需要 {self.config.min_examples_per_class} 个样本，"
                f"不足的类别: {', '.join(insufficient)}"
            )

    def _report(self, kind: str, message: str, level: int = logging.INFO, **fields) -> None:
        self.log_sink.append(message, level)
        self.channel.emit(kind, message, **fields)

    async def run(self, corpus: TrainingCorpus) -> TrainingResult:
        """运行训练任务

        Args:
            corpus: 训练样本集，训练使用校验时的快照

        Returns:
            TrainingResult: 训练结果；失败或取消时 success 为 False，原有模型保持可用

        Raises:
            ValidationError: 训练数据不满足前置条件时抛出，训练不会开始
            RuntimeError: 已有训练任务在运行时抛出
        """
        if self._running:
            raise RuntimeError("训练任务已在运行")

        snapshot = corpus.snapshot()
        try:
            self.validate(snapshot)
        except ValidationError as e:
            self._report("failed", e.message, logging.WARNING)
            raise

        self._running = True
        self._cancel_event.clear()
        labels = list(snapshot)
        result = TrainingResult(success=False, labels=labels)
        start_time = time.time()

        try:
            classifier = self.classifier_factory()
            classifier.build(labels)
            self._report("started", f"开始训练: {len(labels)} 个类别 ({', '.join(labels)}), "
                                    f"共 {sum(len(v) for v in snapshot.values())} 个样本")

            with TensorResourceGuard("training-session") as guard:
                inputs, targets = await asyncio.to_thread(classifier.prepare_examples, snapshot, guard)
                await self._run_epochs(classifier, inputs, targets, result)

            result.success = True
            self.active_model.set(classifier)
            self._report("completed", f"训练完成，新模型已启用 (准确率: {result.final_accuracy:.2%})",
                         progress=100.0, accuracy=result.final_accuracy)
            log_performance("自定义模型训练", time.time() - start_time,
                            类别数=len(labels), 轮数=result.epochs_completed)

            if self.store is not None:
                self._persist(classifier, result)

        except TrainingCancelledError as e:
            result.cancelled = True
            result.error = e.message
            self._report("cancelled", f"{e.message}，已丢弃部分训练结果", logging.WARNING,
                         epoch=result.epochs_completed)
        except Exception as e:
            result.error = str(e)
            log_error(e, "训练任务", 类别=labels, 已完成轮数=result.epochs_completed)
            self._report("failed", f"训练失败: {str(e)}", logging.ERROR,
                         epoch=result.epochs_completed)
        finally:
            self._running = False

        return result

    async def _run_epochs(self, classifier: TrainableClassifier, inputs, targets,
                          result: TrainingResult) -> None:
        """逐轮训练，每轮之间检查取消请求并让出事件循环"""
        epochs = self.config.epochs
        iterator = classifier.iter_fit(
            inputs, targets,
            epochs=epochs,
            batch_size=self.config.batch_size,
            validation_fraction=self.config.validation_fraction
        )
        try:
            while True:
                if self.cancel_requested:
                    raise TrainingCancelledError(result.epochs_completed)

                log = await asyncio.to_thread(next, iterator, None)
                if log is None:
                    break

                result.history.append(log)
                result.epochs_completed = log.epoch + 1
                progress = result.epochs_completed / epochs * 100.0

                message = (f"第 {result.epochs_completed}/{epochs} 轮: "
                           f"损失 {log.loss:.4f}, 准确率 {log.accuracy:.2%}")
                if log.val_accuracy is not None:
                    message += f", 验证损失 {log.val_loss:.4f}, 验证准确率 {log.val_accuracy:.2%}"
                self._report("epoch", message, epoch=log.epoch, progress=progress,
                             loss=log.loss, accuracy=log.accuracy)

                # 让出事件循环，检测循环可以在两轮之间运行
                await asyncio.sleep(0)
        finally:
            iterator.close()

    def _persist(self, classifier: TrainableClassifier, result: TrainingResult) -> None:
        """保存训练好的模型，失败时只报告，不影响已启用的模型"""
        try:
            classifier.save(self.config.model_key, self.store)
            result.persisted = True
            self.log_sink.append(f"模型已保存: {self.config.model_key}")
        except PersistenceError as e:
            self._report("log", f"模型保存失败: {e.message}", logging.ERROR)
