from batchex.storage.filesystem_storage import FileSystemStorage

__all__ = ['FileSystemStorage']
