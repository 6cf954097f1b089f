import os
from typing import Optional
from dotenv import load_dotenv
from fastapi import HTTPException, Header

load_dotenv()
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "change-me")

def verify_admin(x_api_key: str = Header(default="")):
    if x_api_key != ADMIN_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin API key")

def current_respondent_ref(x_respondent_ref: str = Header(default="")) -> Optional[str]:
    """Public reference of the signed-in respondent, as resolved by the auth layer in front of us."""
    return x_respondent_ref.strip() or None

def require_respondent_ref(x_respondent_ref: str = Header(default="")) -> str:
    ref = current_respondent_ref(x_respondent_ref)
    if not ref:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return ref
