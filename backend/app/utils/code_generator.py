import secrets
import string

REFERRAL_CODE_PREFIX = "REF"
REFERRAL_CODE_SUFFIX_LENGTH = 6

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code(user_id: str) -> str:
    """Generate a referral code: REF + 6 chars of the user id + 6 random chars.

    The user-id prefix makes codes guessable at scale; only the random
    suffix carries entropy.
    """
    stem = "".join(ch for ch in str(user_id) if ch.isalnum())[:6].upper()
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(REFERRAL_CODE_SUFFIX_LENGTH))
    return f"{REFERRAL_CODE_PREFIX}{stem}{suffix}"
