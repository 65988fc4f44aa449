"""
Repository 层

职责：工作流与检查点的持久化

模块说明：
- base.py: 仓储协议与过滤工具
- memory.py: 进程内实现（测试 / 本地开发）
- sql.py: SQLModel + SQLAlchemy 异步实现
"""
