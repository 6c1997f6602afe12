"""
Exception hierarchy shared by the server components
"""


class ServerError(Exception):
    """Base class for server-specific exceptions."""
    pass

class ProtocolError(ServerError):
    """Indicates an error in protocol adherence by the client."""
    pass

class CapacityError(ServerError):
    """Raised when the session table has no free slot left."""
    pass

class FileError(ServerError):
    """Indicates an error related to file operations or validity."""
    pass

class DirectoryAccessError(FileError):
    """The served directory cannot be opened. Fatal for the whole server."""
    pass

class FilenameCollisionError(FileError):
    """No free disambiguated name is left for an incoming file."""
    pass
