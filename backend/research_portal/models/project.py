from __future__ import annotations

from enum import IntEnum


class ProjectStatus(IntEnum):
    """
    研究项目（proposal -> final report）生命周期。

    中文注释:
    - 数据库存储为整数（历史数据沿用 0..5），业务代码只通过本枚举读写。
    - 所有状态写入都必须经过 allowed_next 校验（见 WorkflowService）。
    """

    REJECTED = 0
    SUBMITTED = 1
    UNDER_REVIEW = 2
    ONGOING = 3
    FINAL_REPORT_SUBMITTED = 4
    COMPLETED = 5

    @classmethod
    def allowed_next(cls, current: int | None) -> set[int]:
        """
        - submitted -> under_review / ongoing / rejected
        - under_review -> under_review（改派审稿人）/ ongoing / rejected
        - ongoing -> final_report_submitted
        - final_report_submitted -> final_report_submitted（重新上传）/ ongoing（退修）/ completed / rejected
        - rejected / completed 为终态
        """
        c = normalize_project_status(current)
        if c == cls.SUBMITTED:
            return {cls.UNDER_REVIEW.value, cls.ONGOING.value, cls.REJECTED.value}
        if c == cls.UNDER_REVIEW:
            return {cls.UNDER_REVIEW.value, cls.ONGOING.value, cls.REJECTED.value}
        if c == cls.ONGOING:
            return {cls.FINAL_REPORT_SUBMITTED.value}
        if c == cls.FINAL_REPORT_SUBMITTED:
            return {
                cls.FINAL_REPORT_SUBMITTED.value,
                cls.ONGOING.value,
                cls.COMPLETED.value,
                cls.REJECTED.value,
            }
        return set()

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()


class ReviewType(IntEnum):
    PROPOSAL = 1
    FINAL_REPORT = 2

    @property
    def payment_type(self) -> str:
        return "final_report_review" if self == ReviewType.FINAL_REPORT else "proposal_review"


def normalize_project_status(value: int | str | None) -> ProjectStatus | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, int):
            return ProjectStatus(int(value))
        return ProjectStatus(int(str(value).strip()))
    except (TypeError, ValueError):
        return None


def normalize_review_type(value: int | str | None) -> ReviewType:
    # 缺省按 proposal review 处理
    if value in (None, ""):
        return ReviewType.PROPOSAL
    try:
        if isinstance(value, int):
            return ReviewType(int(value))
        return ReviewType(int(str(value).strip()))
    except (TypeError, ValueError):
        return ReviewType.PROPOSAL


def researcher_notification_for(review_type: ReviewType, new_status: int) -> str | None:
    """
    人工审稿结果 -> 通知研究者的邮件类型。
    """
    if review_type == ReviewType.PROPOSAL:
        if new_status == ProjectStatus.ONGOING:
            return "PROPOSAL_ACCEPTED"
        if new_status == ProjectStatus.REJECTED:
            return "PROPOSAL_REJECTED"
        return None
    if new_status == ProjectStatus.COMPLETED:
        return "REPORT_ACCEPTED"
    # 停留在 FINAL_REPORT_SUBMITTED 视为需要修改后重交
    if new_status in (ProjectStatus.REJECTED, ProjectStatus.ONGOING, ProjectStatus.FINAL_REPORT_SUBMITTED):
        return "REPORT_REJECTED"
    return None
