from courier.ApplicationInfo import applicationInfo

__version__ = applicationInfo["version"]
