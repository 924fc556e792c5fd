"""
Headers for loading images from third-party CDNs.

Some image hosts reject hotlinked requests without a matching Referer
(i.pximg.net answers 403, wallhaven CDNs sometimes do). Callers that
download or proxy images ask the policy which headers to send.
"""

from typing import Dict, Optional

from .base import CanonicalImage, SourceRule

IMAGE_USER_AGENT = (
    'Mozilla/5.0 (Linux; Android 13) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120 Safari/537.36'
)
IMAGE_ACCEPT = 'image/avif,image/webp,image/apng,image/*,*/*;q=0.8'

# host fragment -> defaults added when the rule does not set them
HOST_DEFAULTS = {
    'pximg.net': {
        'Referer': 'https://www.pixiv.net/',
        'User-Agent': IMAGE_USER_AGENT,
    },
    'wallhaven.cc': {
        'Referer': 'https://wallhaven.cc/',
        'User-Agent': IMAGE_USER_AGENT,
        'Accept': IMAGE_ACCEPT,
    },
}


class ImageHeaderPolicy:
    """Computes per-image request headers."""

    def headers_for(self, image: CanonicalImage, rule: Optional[SourceRule] = None) -> Dict[str, str]:
        """
        Headers to send when fetching `image`.

        Rule headers come first (blank keys and None values dropped); host
        defaults only fill what the rule left unset.
        """
        headers: Dict[str, str] = {}
        if rule is not None:
            for key, value in rule.headers.items():
                key = str(key).strip()
                if not key or value is None:
                    continue
                headers[key] = str(value)

        url = (image.thumb_url or image.full_url).lower()
        present = {k.lower() for k in headers}
        for host, defaults in HOST_DEFAULTS.items():
            if host in url:
                for key, value in defaults.items():
                    if key.lower() not in present:
                        headers[key] = value
                break
        return headers
