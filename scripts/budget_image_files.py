import os

# Extensions Pillow can decode that we pick up when walking a folder
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".tif", ".webp"}


def is_image_file(path):
    return os.path.splitext(path)[1].lower() in IMAGE_EXTENSIONS


def find_images(folder_path):
    """Return image paths under *folder_path*, sorted so batch runs are reproducible."""
    images = []
    for root, dirs, files in os.walk(folder_path):  # Recursively walks through folders
        dirs.sort()
        for file in sorted(files):
            if is_image_file(file):
                images.append(os.path.join(root, file))
    return images


def count_images(folder_path):
    return len(find_images(folder_path))


# Example usage
if __name__ == "__main__":
    folder = input("Enter folder path: ").strip()
    total_images = count_images(folder)
    print(f"Total number of images in '{folder}': {total_images}")
