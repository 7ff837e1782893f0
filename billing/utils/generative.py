import base64
import binascii
import logging
import re

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

EDIT_API_ENDPOINT = getattr(
    settings, "EDIT_API_ENDPOINT", "https://api.apiyi.com/v1/chat/completions"
)
EDIT_API_KEY = getattr(settings, "EDIT_API_KEY", "")
EDIT_API_MODEL = getattr(settings, "EDIT_API_MODEL", "gemini-2.5-flash-image")
EDIT_API_TIMEOUT = getattr(settings, "EDIT_API_TIMEOUT", 120)

DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


def build_edit_payload(instruction: str, image_urls: list) -> dict:
    """Chat-completions request body: the instruction followed by every input image."""
    content = [{"type": "text", "text": instruction}]
    content.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)
    return {
        "model": EDIT_API_MODEL,
        "stream": False,
        "messages": [{"role": "user", "content": content}],
    }


def extract_images(response_data: dict) -> list:
    """
    Pull generated images out of a chat-completions response.

    The model answers in markdown, `![image](data:image/png;base64,...)`, so
    the payload is the text between the first "(" and the following ")".
    Choices without a decodable image are skipped.
    """
    images = []
    for index, choice in enumerate(response_data.get("choices") or []):
        content = (choice.get("message") or {}).get("content")
        if not isinstance(content, str):
            continue
        start = content.find("(")
        end = content.find(")", start + 1)
        if start == -1 or end == -1:
            continue
        payload = DATA_URL_PREFIX.sub("", content[start + 1 : end].strip())
        try:
            images.append(base64.b64decode(payload, validate=True))
        except (binascii.Error, ValueError):
            logger.warning("Edit API choice %d carried no decodable image.", index)
    return images


def request_image_edit(instruction: str, image_urls: list) -> dict:
    """
    Send an edit request to the generative image API.

    Handles HTTP errors and network failures the same way and returns a
    structured result dict for consistent downstream handling.

    Returns:
        dict with keys:
            - success (bool): Whether the API returned at least one image.
            - images (list[bytes]): Decoded image files.
            - response (dict): Error details, or the response minus image data.
    """
    try:
        response = requests.post(
            EDIT_API_ENDPOINT,
            json=build_edit_payload(instruction, image_urls),
            headers={"Authorization": f"Bearer {EDIT_API_KEY}"},
            timeout=EDIT_API_TIMEOUT,
        )

        if response.status_code != 200:
            logger.warning(
                "Edit API returned an error: status=%d body=%s",
                response.status_code,
                response.text[:500],
            )
            return {
                "success": False,
                "images": [],
                "response": {"error": "http_error", "status": response.status_code},
            }

        response_data = response.json()
        images = extract_images(response_data)
        summary = {"id": response_data.get("id"), "model": response_data.get("model")}

        if not images:
            logger.warning("Edit API response contained no image: %s", summary)
            return {
                "success": False,
                "images": [],
                "response": {"error": "no_image", **summary},
            }

        logger.info("Edit API succeeded: images=%d response=%s", len(images), summary)
        return {"success": True, "images": images, "response": summary}

    except requests.exceptions.ConnectionError as exc:
        logger.error("Edit API connection error: %s", str(exc))
        return {
            "success": False,
            "images": [],
            "response": {"error": "connection_error", "detail": str(exc)},
        }

    except requests.exceptions.Timeout as exc:
        logger.error("Edit API timeout: %s", str(exc))
        return {
            "success": False,
            "images": [],
            "response": {"error": "timeout", "detail": str(exc)},
        }

    except (requests.exceptions.RequestException, ValueError) as exc:
        logger.error("Edit API request error: %s", str(exc))
        return {
            "success": False,
            "images": [],
            "response": {"error": "request_error", "detail": str(exc)},
        }
