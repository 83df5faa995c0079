#!/usr/bin/env python3
"""
自定义物体检测系统主程序

基于 YOLO 通用检测模型的实时物体检测系统，支持用少量样本定义自定义类别，
并训练小型分类器识别这些类别。集成配置管理、帧源、检测循环和训练任务模块。
"""

import asyncio
import os
import sys
import time
from pathlib import Path
from typing import Optional

# 添加项目根目录到 Python 路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from detectors.general_detector import GeneralDetector
from models.data_models import Config, DetectionState, TrainingResult
from models.exceptions import (
    ConfigurationError,
    FrameNotReadyError,
    ModelLoadError,
    ObjectDetectionError,
    PersistenceError,
    ValidationError
)
from processors.detection_loop import DetectionLoop
from processors.frame_source import CameraFrameSource, ImageFrameSource
from training.classifier import TrainableClassifier
from training.corpus import TrainingCorpus
from training.model_store import FileModelBlobStore
from training.session import ActiveModelSlot, TrainingSession
from utils.config_manager import ConfigManager
from utils.log_sink import LogSink, ProgressChannel
from utils.logger import (
    configure_logging, get_logger, log_system_startup,
    log_performance, log_error, logger_manager
)


IMAGE_SUFFIXES = {'.jpg', '.jpeg', '.png', '.bmp'}


class CustomObjectDetectionApp:
    """自定义物体检测应用主类

    协调各个模块，处理命令行输入和程序流程控制。
    detect: 配置加载 -> 模型初始化 -> 实时/单次检测 -> 输出结果
    train: 配置加载 -> 读取样本目录 -> 训练 -> 保存模型
    """

    def __init__(self):
        """初始化应用"""
        self.config_manager: Optional[ConfigManager] = None
        self.config: Optional[Config] = None
        self.corpus = TrainingCorpus()
        self.active_model = ActiveModelSlot()
        self.store: Optional[FileModelBlobStore] = None
        self.frame_source = None
        self.detection_loop: Optional[DetectionLoop] = None
        self.logger = get_logger(__name__)

        # 统计信息
        self.stats = {
            'ticks': 0,
            'detection_count': 0,
            'start_time': None,
            'end_time': None
        }

    def setup_logging(self, config: Config) -> None:
        """按配置设置日志系统"""
        if config.log_file_path:
            os.makedirs(os.path.dirname(config.log_file_path) or ".", exist_ok=True)

        configure_logging(
            log_level=config.log_level,
            log_file_path=config.log_file_path,
            enable_console=config.enable_console_log
        )
        log_system_startup()

    def load_configuration(self, args: Optional[list] = None) -> Config:
        """加载配置并初始化日志

        Raises:
            ConfigurationError: 配置加载失败
        """
        config_start_time = time.time()
        self.config_manager = ConfigManager(args=args)
        self.config = self.config_manager.load_config()

        self.setup_logging(self.config)
        logger_manager.log_config_info(self.config)
        log_performance("配置加载", time.time() - config_start_time)

        self.store = FileModelBlobStore(self.config.model_store_dir)
        return self.config

    def load_saved_model(self) -> Optional[TrainableClassifier]:
        """启动时加载已保存的自定义模型

        Returns:
            Optional[TrainableClassifier]: 加载的模型；没有保存的模型或数据损坏时返回 None
        """
        key = self.config.model_key
        if not self.store.exists(key):
            self.logger.info(f"没有已保存的自定义模型: {key}")
            return None

        model = TrainableClassifier(
            input_size=self.config.input_size,
            learning_rate=self.config.learning_rate,
            min_examples_per_class=self.config.min_examples_per_class
        )
        try:
            model.load(key, self.store)
        except PersistenceError as e:
            self.logger.warning(f"自定义模型加载失败，继续使用样例匹配: {e.message}")
            return None

        self.logger.info(f"已加载自定义模型: {key} (类别: {', '.join(model.labels)})")
        return model

    def _create_frame_source(self, source: str):
        """根据配置创建帧源，图片文件使用静态帧源"""
        if Path(source).suffix.lower() in IMAGE_SUFFIXES:
            return ImageFrameSource(source)
        return CameraFrameSource(source)

    def initialize_detection(self) -> None:
        """初始化检测所需的组件

        Raises:
            ConfigurationError: 帧源配置错误
            ModelLoadError: 通用检测模型加载失败
        """
        init_start_time = time.time()
        self.logger.info("正在初始化检测组件...")

        # 1. 帧源
        self.frame_source = self._create_frame_source(self.config.source)

        # 2. 通用检测器
        model_start_time = time.time()
        detector = GeneralDetector(self.config.model_path)
        detector.load_model()
        model_info = detector.get_model_info()
        log_performance("模型加载", time.time() - model_start_time,
                        类别数=model_info['num_classes'],
                        模型路径=model_info['model_path'])

        # 3. 检测循环
        self.detection_loop = DetectionLoop(
            frame_source=self.frame_source,
            detector=detector,
            corpus=self.corpus,
            config=self.config,
            active_model=self.active_model
        )

        # 4. 自定义模型
        model = self.load_saved_model()
        if model is not None:
            self.detection_loop.use_model(model)

        log_performance("系统初始化", time.time() - init_start_time)
        self.logger.info("检测组件初始化完成")

    def report_state(self, state: DetectionState) -> None:
        """输出一次检测结果"""
        if not state.detections:
            self.logger.info(f"第 {state.tick_number} 次检测: 未发现物体")
            return

        summary = ", ".join(f"{name} x{count}" for name, count in sorted(state.object_counts.items()))
        self.logger.info(f"第 {state.tick_number} 次检测: {summary}")
        for detection in state.detections:
            x, y, w, h = detection.bbox
            self.logger.debug(f"  {detection.class_name} ({detection.source.value}) "
                              f"{detection.score:.2f} [{x:.0f}, {y:.0f}, {w:.0f}, {h:.0f}]")

    async def run_detection(self, duration: Optional[float]) -> bool:
        """运行检测

        单次模式检测一次；实时模式运行指定时长，未指定时运行到用户中断。
        """
        loop = self.detection_loop
        self.stats['start_time'] = time.time()

        try:
            if not self.config.continuous:
                try:
                    state = await loop.detect_once()
                except FrameNotReadyError as e:
                    self.logger.error(f"无法获取帧: {e.message}")
                    return False
                self.stats['ticks'] = 1
                self.stats['detection_count'] = len(state.detections)
                self.report_state(state)
                return True

            last_tick = 0
            loop.start()
            try:
                deadline = None if duration is None else time.monotonic() + duration
                while deadline is None or time.monotonic() < deadline:
                    await asyncio.sleep(1.0)
                    if not loop.detector_available:
                        self.logger.error("通用检测器不可用，停止实时检测")
                        return False
                    state = loop.detection_state
                    if state.tick_number != last_tick:
                        last_tick = state.tick_number
                        self.stats['detection_count'] += len(state.detections)
                        self.report_state(state)
                        self.logger.info(f"当前帧率: {loop.fps} FPS")
            finally:
                loop.stop()
                await loop.wait_idle()
                self.stats['ticks'] = loop.stats['ticks']
            return True
        finally:
            self.stats['end_time'] = time.time()
            log_performance("检测完成", self.stats['end_time'] - self.stats['start_time'],
                            循环次数=self.stats['ticks'],
                            检测总数=self.stats['detection_count'])

    def load_training_data(self, data_dir: str) -> int:
        """从样本目录读取训练数据

        每个子目录是一个类别，目录名为类别名称，目录中的图片为该类别的样本。

        Returns:
            int: 读取的样本总数

        Raises:
            ConfigurationError: 样本目录不存在
        """
        root = Path(data_dir)
        if not root.is_dir():
            raise ConfigurationError(f"训练样本目录不存在: {data_dir}")

        total = 0
        for class_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            self.corpus.add_class(class_dir.name)
            for image_path in sorted(class_dir.iterdir()):
                if image_path.suffix.lower() not in IMAGE_SUFFIXES:
                    continue
                try:
                    self.corpus.add_example_from_file(class_dir.name, str(image_path))
                    total += 1
                except ValueError as e:
                    self.logger.warning(f"跳过无法读取的样本 {image_path}: {str(e)}")

        self.logger.info(f"已读取训练样本: {self.corpus.counts()}")
        return total

    async def run_training(self, data_dir: str) -> TrainingResult:
        """运行训练任务并保存模型"""
        self.load_training_data(data_dir)
        session = TrainingSession(
            config=self.config,
            active_model=self.active_model,
            channel=ProgressChannel(),
            log_sink=LogSink("training"),
            store=self.store
        )
        return await session.run(self.corpus)

    def print_statistics(self) -> None:
        """打印检测统计信息"""
        if self.stats['start_time'] and self.stats['end_time']:
            duration = self.stats['end_time'] - self.stats['start_time']

            print("\n" + "=" * 50)
            print("检测统计信息")
            print("=" * 50)
            print(f"检测次数: {self.stats['ticks']}")
            print(f"检测物体总数: {self.stats['detection_count']}")
            print(f"运行时间: {duration:.2f} 秒")
            print("=" * 50)

    def print_training_result(self, result: TrainingResult) -> None:
        """打印训练结果"""
        print("\n" + "=" * 50)
        print("训练结果")
        print("=" * 50)
        print(f"类别: {', '.join(result.labels)}")
        print(f"完成轮数: {result.epochs_completed}")
        if result.final_accuracy is not None:
            print(f"最终准确率: {result.final_accuracy:.2%}")
        print(f"模型已保存: {'是' if result.persisted else '否'}")
        print("=" * 50)

    def cleanup(self) -> None:
        """清理资源"""
        if self.frame_source is not None:
            self.frame_source.release()
        logger_manager.shutdown()

    def run(self, args: Optional[list] = None) -> int:
        """运行应用程序

        Args:
            args: 命令行参数列表

        Returns:
            int: 退出代码 (0表示成功，非0表示失败)
        """
        try:
            self.load_configuration(args)
            cmd = self.config_manager.command_args

            if cmd.command == 'train':
                if not cmd.data_dir:
                    raise ConfigurationError("训练模式必须通过 --data-dir 指定样本目录")
                result = asyncio.run(self.run_training(cmd.data_dir))
                self.print_training_result(result)
                return 0 if result.success else 1

            self.initialize_detection()
            if not asyncio.run(self.run_detection(cmd.duration)):
                return 1
            self.print_statistics()
            return 0

        except ConfigurationError as e:
            self.logger.error(f"配置错误: {str(e)}")
            return 2
        except ModelLoadError as e:
            self.logger.error(f"模型加载错误: {str(e)}")
            return 3
        except ValidationError as e:
            self.logger.error(f"训练数据错误: {str(e)}")
            return 4
        except ObjectDetectionError as e:
            log_error(e, "运行")
            return 1
        except KeyboardInterrupt:
            self.logger.info("程序被用户中断")
            return 130
        finally:
            self.cleanup()


def main():
    """主函数入口"""
    app = CustomObjectDetectionApp()

    try:
        exit_code = app.run()
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\n程序被用户中断")
        sys.exit(130)


if __name__ == "__main__":
    main()
