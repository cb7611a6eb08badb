from .config import Config
from .feature import Feature, generateFeaturePool, imagePyramid
from .cascade import Cart, JoinCascador
from .neggenerator import NegGenerator, MiningStats, State
from .dataset import DataSet
from .snapshot import SnapshotError
