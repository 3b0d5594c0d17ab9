from jobtracker.models.company import Company
from jobtracker.models.job import Job
from jobtracker.models.session import ScrapeSession, ScrapingLog
from jobtracker.models.match import MatchSession, MatchLog
from jobtracker.models.setting import Setting
from jobtracker.models.profile import Profile

__all__ = [
    "Company",
    "Job",
    "ScrapeSession",
    "ScrapingLog",
    "MatchSession",
    "MatchLog",
    "Setting",
    "Profile",
]
