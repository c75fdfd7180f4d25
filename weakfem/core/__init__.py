from .mesh import Mesh, Facet
from .controlpoints import ControlPoints
from .elementspace import ElementSpace
from .dofhandler import DofHandler
from .domain import FEMDomain, WorkPiece, BoundaryRegion, GlobalField
from .snapshot import Snapshot, ExportTransform
__all__ = ['Mesh', 'Facet', 'ControlPoints', 'ElementSpace', 'DofHandler', 'FEMDomain',
           'WorkPiece', 'BoundaryRegion', 'GlobalField', 'Snapshot', 'ExportTransform']
