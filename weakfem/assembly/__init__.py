from .global_assembler import AssemblyBlock, GlobalAssembler
