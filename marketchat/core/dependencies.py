import logging
import jwt
from dotenv import load_dotenv
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from marketchat.core.identity import IdentityResolver
from marketchat.core.supabase_client import get_supabase
from marketchat.utils.env_helper import env_none_or_str

load_dotenv()
logger = logging.getLogger(__name__)

security = HTTPBearer()
JWT_SIGN_KEY = env_none_or_str("SUPABASE_JWT_SECRET")
JWT_ISSUER = f"{env_none_or_str('PUBLIC_SUPABASE_URL', '')}/auth/v1"


def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
    token = credentials.credentials

    try:
        payload = jwt.decode(
            token,
            JWT_SIGN_KEY,
            algorithms=["HS256"],
            issuer=JWT_ISSUER,
            options={"verify_aud": False},
            leeway=60,
        )
        return payload

    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")

    except jwt.InvalidTokenError as e:
        logger.info("JWT verification failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_identity(
    payload=Depends(verify_token),
    credentials: HTTPAuthorizationCredentials = Depends(security),
    client=Depends(get_supabase),
) -> IdentityResolver:
    return IdentityResolver(client, jwt=credentials.credentials)


async def get_current_user_id(identity: IdentityResolver = Depends(get_identity)) -> int:
    user_id = await identity.current_user_id()
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    return user_id
