"""EV Queue 后端

充电桩全局排队、会话计时与实时推送服务。
"""

__version__ = "1.0.0"
