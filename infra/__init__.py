"""
Infrastructure 层 - 基础设施服务

┌─────────────────────────────────────────────────────────────┐
│                        infra/                               │
├─────────────────────────────────────────────────────────────┤
│  resilience/  │ 弹性机制 (重试/指数退避/超时)                 │
│               │ 连接器重连与平台 REST 调用保护                 │
└─────────────────────────────────────────────────────────────┘
"""
