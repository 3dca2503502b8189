from jobfeed.models.job import JobPosting, JOB_STATUSES
from jobfeed.models.app_setting import AppSetting

__all__ = ["JobPosting", "JOB_STATUSES", "AppSetting"]
