"""
Upload queue, retry policy, storage backends and the upload processor.
"""
