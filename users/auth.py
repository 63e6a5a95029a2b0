from typing import Optional

PRIVY_TOKEN_COOKIE = 'privy-token'


def read_access_token(request) -> Optional[str]:
    """Identity-provider access token from ``Authorization: Bearer`` or the privy-token cookie"""
    if request is None:
        return None
    header = request.META.get('HTTP_AUTHORIZATION', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() == 'bearer' and token.strip():
        return token.strip()
    cookies = getattr(request, 'COOKIES', None) or {}
    return cookies.get(PRIVY_TOKEN_COOKIE) or None
