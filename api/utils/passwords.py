from pwdlib import PasswordHash

password_hash = PasswordHash.recommended()
# Verified against when the identifier is unknown, so a miss costs as much as a hit
DUMMY_HASH = password_hash.hash("dummy-password-for-timing")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against its hashed version."""
    return password_hash.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash the given password."""
    return password_hash.hash(password)
