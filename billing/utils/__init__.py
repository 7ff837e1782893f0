from billing.utils.generative import extract_images, request_image_edit

__all__ = ["extract_images", "request_image_edit"]
