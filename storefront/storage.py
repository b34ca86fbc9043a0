import logging
import os
from typing import Iterable, List, Optional, Set, Tuple
from uuid import uuid4

from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}


class LocalImageStorage:
    """Keeps uploaded product images in a folder served under /uploads."""

    def __init__(self, upload_folder: str, allowed_extensions: Optional[Set[str]] = None):
        self.upload_folder = upload_folder
        self.allowed_extensions = allowed_extensions or ALLOWED_IMAGE_EXTENSIONS
        os.makedirs(self.upload_folder, exist_ok=True)

    def allowed_image_extension(self, filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in self.allowed_extensions

    def save(self, image_file, folder: str = "products") -> Tuple[Optional[str], Optional[str]]:
        if not image_file or not getattr(image_file, "filename", ""):
            return None, "No image file provided"

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            return None, "Please choose a valid file name."

        if not self.allowed_image_extension(original_filename):
            return (
                None,
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
            )

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{folder}-{uuid4().hex}{extension}"
        destination = os.path.join(self.upload_folder, unique_filename)

        try:
            image_file.save(destination)
        except OSError as exc:
            logger.error("Unable to store uploaded image %s: %s", original_filename, exc)
            return None, "We could not store the uploaded image. Please try again."

        return unique_filename, None

    def save_many(self, image_files: Iterable, folder: str = "products") -> Tuple[List[str], Optional[str]]:
        saved_filenames: List[str] = []
        for image_file in image_files or []:
            if not image_file or not getattr(image_file, "filename", ""):
                continue
            new_filename, image_error = self.save(image_file, folder)
            if image_error:
                self.remove(saved_filenames)
                return [], image_error
            saved_filenames.append(new_filename)
        return saved_filenames, None

    def remove(self, filename) -> None:
        if not filename:
            return

        if isinstance(filename, (list, tuple, set)):
            for item in filename:
                self.remove(item)
            return

        target = os.path.join(self.upload_folder, os.path.basename(str(filename)))
        try:
            os.remove(target)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Unable to remove image %s: %s", target, exc)
