#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""Exceptions raised by the generation runtime."""


class AnekitError(Exception):
    """Base class for all runtime errors.

    ``partial_text`` holds whatever text a generation request had already
    produced when the error was raised. It is empty for errors raised before
    any token was generated.
    """

    def __init__(self, message="", partial_text=""):
        super().__init__(message)
        self.partial_text = partial_text


class NotLoadedError(AnekitError):
    """A model stage (or the manager) was used before being loaded."""


class ModelLoadError(AnekitError):
    """A model artifact failed to load. The handle stays unloaded."""


class PipelineConstructionFailed(AnekitError):
    """The artifacts needed to build a pipeline are missing or incompatible."""


class PredictionFailed(AnekitError):
    """A forward pass or token selection produced no usable output."""


class InvalidInputError(AnekitError, ValueError):
    """Empty or malformed token input."""


class PipelineBusyError(AnekitError):
    """A pipeline already has a generation request in flight."""


class ConfigError(AnekitError, ValueError):
    """Malformed configuration file or value."""
