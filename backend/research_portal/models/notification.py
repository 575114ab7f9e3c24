from typing import Literal, Optional

from pydantic import BaseModel, Field


NotificationType = Literal["info", "success", "warning", "error"]


class NotificationCreate(BaseModel):
    """
    创建站内通知的输入结构（服务端内部使用）

    中文注释:
    - related_id 指向稿件/项目/审稿记录，前端据此跳转。
    """

    user_id: str
    title: str = Field(..., max_length=255)
    message: str = Field(..., max_length=2000)
    type: NotificationType = "info"
    related_id: Optional[str] = None
    is_read: bool = False
