import numpy as np

from kernelpipe.cache import Precision
from kernelpipe.compiler import KernelBuilder
from kernelpipe.launcher import KernelLauncher, LaunchConfig
from kernelpipe.options import JitOption, OptionTable
from kernelpipe.pipeline import KernelPipeline
from kernelpipe.runtime import DeviceRuntime, RuntimeState


def _pipeline(builder, driver):
    return KernelPipeline(builder, DeviceRuntime(driver), KernelLauncher())


def test_end_to_end_vector_add(builder, fake_compiler, fake_driver):
    with _pipeline(builder, fake_driver) as pipe:
        fn = pipe.load_function("add.cu", "vectorAdd", Precision.SINGLE, device_ordinal=0)
        assert fake_compiler.invocations == 1
        assert fn.module.path == builder.cache.root / "float" / "add.ptx"
        assert pipe.runtime.state is RuntimeState.FUNCTION_RESOLVED

        n = 128 * 256
        elapsed = pipe.launch(
            fn,
            LaunchConfig(grid=(128, 1, 1), block=(256, 1, 1), params=(np.int32(n), 1, 2, 3)),
        )
        assert elapsed >= 0.0
        assert fake_driver.launches[0]["grid"] == (128, 1, 1)
        assert fake_driver.launches[0]["block"] == (256, 1, 1)
    assert fake_driver.calls[-1] == "destroy_context"


def test_repeated_loads_reuse_artifact_context_and_module(builder, fake_compiler, fake_driver):
    pipe = _pipeline(builder, fake_driver)
    a = pipe.load_function("add.cu", "vectorAdd")
    b = pipe.load_function("add.cu", "vectorAdd")
    assert a.module is b.module
    assert fake_compiler.invocations == 1
    assert fake_driver.calls.count("create_context") == 1
    assert fake_driver.calls.count("load_module") == 1
    pipe.close()


def test_second_pipeline_hits_disk_cache(builder, fake_compiler, fake_driver):
    _pipeline(builder, fake_driver).load_function("add.cu", "vectorAdd")
    other = KernelBuilder(builder.cache, fake_compiler)
    _pipeline(other, fake_driver).load_function("add.cu", "vectorAdd")
    assert fake_compiler.invocations == 1


def test_run_compiles_loads_and_launches(builder, fake_driver):
    opts = OptionTable()
    opts.put_int(JitOption.OPTIMIZATION_LEVEL, 3)
    pipe = _pipeline(builder, fake_driver)
    pipe.run("add.cu", "vectorAdd", LaunchConfig(grid=4, block=64), precision="double", options=opts)
    assert fake_driver.load_options == [opts]
    assert fake_driver.calls[-2:] == ["launch", "synchronize"]
    assert (builder.cache.root / "double" / "add.ptx").exists()
    pipe.close()


def test_device_ordinal_defaults_to_config(builder, fake_driver, monkeypatch):
    monkeypatch.setenv("KERNELPIPE_DEVICE_INDEX", "1")
    pipe = _pipeline(builder, fake_driver)
    fn = pipe.load_function("add.cu", "vectorAdd")
    assert fn.context.device.ordinal == 1
    pipe.close()


def test_different_jit_options_load_a_separate_module(builder, fake_compiler, fake_driver):
    tuned = OptionTable()
    tuned.put_int(JitOption.MAX_REGISTERS, 16)
    same = OptionTable()
    same.put_int(JitOption.MAX_REGISTERS, 16)
    pipe = _pipeline(builder, fake_driver)
    plain = pipe.load_function("add.cu", "vectorAdd")
    limited = pipe.load_function("add.cu", "vectorAdd", options=tuned)
    again = pipe.load_function("add.cu", "vectorAdd", options=same)
    assert limited.module is not plain.module
    assert again.module is limited.module
    assert fake_driver.load_options == [None, tuned]
    assert fake_compiler.invocations == 1
    pipe.close()


def test_launch_switches_to_the_functions_context(builder, fake_driver):
    pipe = _pipeline(builder, fake_driver)
    on_first = pipe.load_function("add.cu", "vectorAdd", device_ordinal=0)
    on_second = pipe.load_function("add.cu", "vectorAdd", device_ordinal=1)
    assert fake_driver.current is on_second.context.native
    pipe.launch(on_first, LaunchConfig(grid=1, block=32))
    assert fake_driver.calls[-3:] == ["activate", "launch", "synchronize"]
    assert fake_driver.launches[-1]["context"] is on_first.context.native
    pipe.close()
