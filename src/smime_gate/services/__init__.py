from smime_gate.services.forwarder import Forwarder
from smime_gate.services.gateway import SmimeGate
from smime_gate.services.intake import fill_batch
from smime_gate.services.transform import TransformAdapter, TransformPipeline

__all__ = ["Forwarder", "SmimeGate", "TransformAdapter", "TransformPipeline", "fill_batch"]
