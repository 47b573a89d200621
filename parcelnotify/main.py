from parcelnotify.api.main import app  # noqa: F401
