# util/config.py
import os
from decimal import Decimal

DATABASE_URL = os.getenv("DATABASE_URL")
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")
CONTROLLER_TOKEN = os.getenv("CONTROLLER_TOKEN")

ALLOWED_ORIGINS = [
    o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",") if o.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# 日報表用的時區（每日 00:00 起算）
REPORT_TZ = os.getenv("REPORT_TZ", "Asia/Kolkata")

# 唯一的派彩表，自動與手動結算共用
VIOLET_MULTIPLIER = Decimal(os.getenv("VIOLET_MULTIPLIER", "5"))
NUMBER_MULTIPLIER = Decimal(os.getenv("NUMBER_MULTIPLIER", "10"))
