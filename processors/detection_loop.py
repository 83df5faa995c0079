"""
检测循环模块

检测循环在事件循环上逐次调度：每次取一帧，运行通用检测器，
再运行自定义模型（或样例匹配器），合并结果后整体发布为新的检测状态，
并统计每秒循环次数。实时模式下每次循环结束后调度下一次。
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from detectors.exemplar_matcher import ExemplarMatcher
from models.data_models import (
    Config,
    Detection,
    DetectionState,
    Frame,
    LoopState,
    count_objects
)
from models.exceptions import (
    FrameNotReadyError,
    InferenceError,
    ModelLoadError,
    ObjectDetectionError
)
from models.interfaces import IFrameSource, IGeneralDetector
from training.classifier import TrainableClassifier
from training.corpus import TrainingCorpus
from training.session import ActiveModelSlot
from utils.log_sink import DetectionHistory, LogSink
from utils.logger import log_error
from utils.performance import MemoryMonitor, ThroughputCounter


class DetectionLoop:
    """检测循环

    调度状态: IDLE -> RUNNING -> CANCELLING -> IDLE。
    每次循环开始时记录代数，发布前再次核对；模式切换会增加代数，
    切换前开始、切换后才完成的循环结果被丢弃，不会发布过期的检测结果。
    任意两次循环不会同时执行。
    """

    def __init__(self, frame_source: IFrameSource, detector: IGeneralDetector,
                 corpus: TrainingCorpus, config: Config,
                 matcher: Optional[ExemplarMatcher] = None,
                 active_model: Optional[ActiveModelSlot] = None,
                 history: Optional[DetectionHistory] = None,
                 log_sink: Optional[LogSink] = None,
                 clock: Optional[Callable[[], float]] = None):
        """初始化检测循环

        Args:
            frame_source: 帧源
            detector: 通用检测器，需已加载
            corpus: 训练样本集
            config: 系统配置
            matcher: 样例匹配器，None时按配置创建
            active_model: 当前自定义模型，存在时代替样例匹配器
            history: 检测历史记录
            log_sink: 日志行输出
            clock: 吞吐量统计使用的时钟
        """
        self.logger = logging.getLogger(__name__)
        self.frame_source = frame_source
        self.detector = detector
        self.corpus = corpus
        self.config = config
        if matcher is None:
            matcher = ExemplarMatcher(config.acceptance_threshold, config.input_size)
        self.matcher = matcher
        self.active_model = active_model if active_model is not None else ActiveModelSlot()
        self.history = history if history is not None else DetectionHistory()
        self.log_sink = log_sink if log_sink is not None else LogSink("detection")
        self.throughput = ThroughputCounter(clock=clock)
        self.memory_monitor = MemoryMonitor()

        self.state = LoopState.IDLE
        self.continuous = config.continuous
        self.fps = 0
        self.detector_available = True
        self.captured_frame: Optional[Frame] = None

        self._confidence_threshold = config.confidence_threshold
        self._published = DetectionState()
        self._generation = 0
        self._tick_counter = 0
        self._tick_lock: Optional[asyncio.Lock] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

        # 统计信息
        self.stats = {
            'ticks': 0,
            'published': 0,
            'discarded': 0,
            'errors': 0,
            'frame_retries': 0
        }

    # ------------------------------------------------------------------
    # 共享状态
    # ------------------------------------------------------------------

    @property
    def detection_state(self) -> DetectionState:
        """当前发布的检测状态"""
        return self._published

    @property
    def detections(self) -> List[Detection]:
        """当前发布的检测结果"""
        return list(self._published.detections)

    @property
    def object_counts(self) -> dict:
        """当前发布的类别计数"""
        return dict(self._published.object_counts)

    @property
    def generation(self) -> int:
        """当前代数"""
        return self._generation

    @property
    def confidence_threshold(self) -> float:
        """置信度阈值，每次循环读取"""
        return self._confidence_threshold

    @confidence_threshold.setter
    def confidence_threshold(self, value: float) -> None:
        if not 0.0 < value < 1.0:
            raise ValueError("置信度阈值必须在 0.0 到 1.0 之间")
        self._confidence_threshold = float(value)
        self.logger.info(f"置信度阈值已更新为: {value}")

    def details_for(self, class_name: str) -> List[Detection]:
        """获取当前发布结果中某个类别的检测详情"""
        return [d for d in self._published.detections if d.class_name == class_name]

    def use_model(self, model: Optional[TrainableClassifier]) -> None:
        """启用自定义模型

        模型的每个标签都会作为类别出现在训练样本集中。
        """
        if model is not None:
            for label in model.labels:
                self.corpus.add_class(label)
        self.active_model.set(model)

    def _publish(self, state: DetectionState) -> None:
        """整体替换检测状态"""
        self._published = state
        self.history.record(state)
        self.stats['published'] += 1

    def clear_detections(self) -> None:
        """清空发布的检测结果和计数"""
        self._publish(DetectionState(generation=self._generation,
                                     tick_number=self._tick_counter,
                                     timestamp=time.time()))

    # ------------------------------------------------------------------
    # 单次循环
    # ------------------------------------------------------------------

    def _lock(self) -> asyncio.Lock:
        if self._tick_lock is None:
            self._tick_lock = asyncio.Lock()
        return self._tick_lock

    async def _acquire_frame(self) -> Frame:
        """从帧源获取帧，未就绪时按固定退避有限次重试

        Raises:
            FrameNotReadyError: 重试次数用尽时抛出
        """
        for attempt in range(self.config.max_frame_retries):
            frame = await asyncio.to_thread(self.frame_source.current_frame)
            if frame is not None and frame.width > 0 and frame.height > 0:
                return frame
            self.stats['frame_retries'] += 1
            await asyncio.sleep(self.config.retry_backoff)

        raise FrameNotReadyError(f"重试 {self.config.max_frame_retries} 次后仍无可用帧")

    async def _custom_detections(self, frame: Frame, threshold: float) -> List[Detection]:
        """运行自定义模型，没有模型时对每个有样本的类别运行样例匹配器"""
        model = self.active_model.get()
        if model is not None:
            return await asyncio.to_thread(model.predict, frame, threshold)

        detections = []
        for class_name in self.corpus.non_empty_classes():
            exemplars = self.corpus.examples(class_name)
            match = await asyncio.to_thread(self.matcher.match, frame, class_name, exemplars)
            if match is not None:
                detections.append(match)
        return detections

    async def tick(self, frame: Optional[Frame] = None) -> DetectionState:
        """执行一次检测循环

        Args:
            frame: 输入帧，None 或尺寸无效时从帧源获取

        Returns:
            DetectionState: 本次循环得到的检测状态；代数已变化时不会发布

        Raises:
            ModelLoadError: 通用检测器未加载时抛出
            FrameNotReadyError: 无可用帧时抛出
            InferenceError: 检测失败时抛出
        """
        async with self._lock():
            generation = self._generation
            if not self.detector.is_loaded:
                raise ModelLoadError(details="通用检测器未加载")

            if frame is None or frame.width <= 0 or frame.height <= 0:
                frame = await self._acquire_frame()

            self._tick_counter += 1
            tick_number = self._tick_counter
            self.stats['ticks'] += 1
            threshold = self._confidence_threshold

            # 1. 通用检测
            try:
                detections = await asyncio.to_thread(self.detector.detect, frame, threshold)
            except ObjectDetectionError:
                raise
            except Exception as e:
                raise InferenceError(f"第 {tick_number} 次循环通用检测失败: {str(e)}") from e

            # 2. 自定义类别
            try:
                detections = list(detections) + await self._custom_detections(frame, threshold)
            except ObjectDetectionError:
                raise
            except Exception as e:
                raise InferenceError(f"第 {tick_number} 次循环自定义检测失败: {str(e)}") from e

            # 3. 类别计数
            state = DetectionState(
                detections=tuple(detections),
                object_counts=count_objects(detections),
                generation=generation,
                tick_number=tick_number,
                timestamp=time.time()
            )

            # 4. 发布，模式已切换的结果直接丢弃
            if generation != self._generation or tick_number <= self._published.tick_number:
                self.stats['discarded'] += 1
                self.logger.debug(f"丢弃过期的检测结果: 第 {tick_number} 次循环")
                return state
            self._publish(state)

            # 5. 吞吐量统计
            rate = self.throughput.tick()
            if rate is not None:
                self.fps = rate
                self.logger.debug(f"检测帧率: {rate} FPS, 内存: {self.memory_monitor.sample():.1f} MB")

            return state

    # ------------------------------------------------------------------
    # 调度
    # ------------------------------------------------------------------

    def start(self) -> None:
        """进入实时模式并开始调度

        必须在运行中的事件循环内调用。
        """
        loop = asyncio.get_running_loop()
        if self.state is LoopState.RUNNING:
            return

        self.continuous = True
        self.detector_available = self.detector.is_loaded
        self._generation += 1
        resuming = self.state is LoopState.CANCELLING
        self.state = LoopState.RUNNING
        self.throughput.reset()
        self.logger.info("实时检测已启动")

        # 仍在执行的循环结束后会调度下一次
        if not resuming:
            self._schedule(loop, 0)

    def stop(self) -> None:
        """停止调度，取消已安排的下一次循环

        正在执行的循环结果会被丢弃。
        """
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        self._generation += 1
        if self.state is LoopState.IDLE:
            return

        if self._task is not None and not self._task.done():
            self.state = LoopState.CANCELLING
        else:
            self.state = LoopState.IDLE
        self.logger.info("实时检测已停止")

    def set_continuous(self, continuous: bool) -> None:
        """切换实时模式和单次检测模式

        切换到单次模式时取消下一次循环，并清空已发布的检测结果。
        """
        if continuous:
            self.start()
            return

        self.continuous = False
        self.stop()
        self.captured_frame = None
        self.clear_detections()

    async def detect_once(self) -> DetectionState:
        """单次检测：采集当前帧并保存，然后在该帧上执行一次循环"""
        frame = await self._acquire_frame()
        self.captured_frame = frame
        return await self.tick(frame)

    def _schedule(self, loop: asyncio.AbstractEventLoop, delay: float) -> None:
        self._handle = loop.call_later(delay, self._on_timer, loop)

    def _on_timer(self, loop: asyncio.AbstractEventLoop) -> None:
        self._handle = None
        if self.state is not LoopState.RUNNING:
            return
        self._task = loop.create_task(self._run_scheduled_tick(loop))

    async def _run_scheduled_tick(self, loop: asyncio.AbstractEventLoop) -> None:
        """执行一次调度的循环，单帧失败不会终止循环"""
        delay = self.config.tick_interval
        try:
            await self.tick()
        except FrameNotReadyError as e:
            # 瞬时错误，只记录调试日志
            self.logger.debug(str(e.message))
            delay = self.config.retry_backoff
        except ModelLoadError as e:
            # 没有可用检测器时只报告一次，不再紧密重试
            self.stats['errors'] += 1
            self.detector_available = False
            self.log_sink.append(f"检测器不可用: {e.message}", logging.ERROR)
            self.state = LoopState.IDLE
            return
        except Exception as e:
            self.stats['errors'] += 1
            log_error(e, "检测循环", 循环次数=self._tick_counter)
            self.log_sink.append(f"第 {self._tick_counter} 次循环失败: {str(e)}", logging.WARNING)
            delay = self.config.retry_backoff
        finally:
            if self._task is asyncio.current_task():
                self._task = None

        if self.state is LoopState.RUNNING and self.continuous:
            self._schedule(loop, delay)
        elif self.state is LoopState.CANCELLING:
            self.state = LoopState.IDLE

    @property
    def has_pending_tick(self) -> bool:
        """是否有已安排但尚未执行的循环"""
        return self._handle is not None

    async def wait_idle(self) -> None:
        """等待正在执行的循环结束"""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def run_for(self, duration: float) -> None:
        """实时检测指定时长后停止"""
        self.start()
        try:
            await asyncio.sleep(duration)
        finally:
            self.stop()
            await self.wait_idle()
