"""
Channel Gateway Core Module

核心组件：
- gateway: 通道网关（连接器 / 访问控制 / 调度器 / 通道管理）
"""
