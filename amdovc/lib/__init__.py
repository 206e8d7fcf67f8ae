"""amdovc.lib — directive grammar, validation, apply engine, backends.

selectors.py = adapter list parsing + AdapterIterator
params.py    = parameter directive grammar
validate.py  = batch range validation (collects every violation)
apply.py     = preview, merge and commit engine
backend.py   = capability interface, snapshot, backend selection
adl.py       = Catalyst/Crimson backend (ADL Overdrive5 via ctypes)
amdgpu.py    = AMDGPU backend (sysfs)
pci.py       = pci.ids name database
errors.py    = exception hierarchy
"""
