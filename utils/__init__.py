"""
工具模块

包含日志、配置管理、性能统计、图像预处理和张量资源管理。
"""
