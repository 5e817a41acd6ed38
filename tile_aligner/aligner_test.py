import pathlib
import tempfile
import unittest

import numpy as np
import pandas as pd
from pydantic_settings import CliApp

from .aligner import Aligner, ProgressCallbacks, to_grayscale
from .aligner_cli import main
from .parameters import AlignmentParameters, OptimizerParameters, RansacParameters
from .registration._models import ModelType
from .registration.tile_registration import RegistrationResult
from .testutil import blob_canvas, crop, temporary_tiff_files


def make_tiles() -> list[np.ndarray]:
    canvas = blob_canvas(192, 192, num_blobs=150)
    return [crop(canvas, 10, 10, 112, 112), crop(canvas, 60, 14, 112, 112)]


class AlignerTest(unittest.TestCase):
    def test_align_tiff_files(self) -> None:
        with temporary_tiff_files(make_tiles()) as paths, tempfile.TemporaryDirectory() as out:
            output_csv = pathlib.Path(out) / "results" / "transforms.csv"
            params = AlignmentParameters(
                input_files=[str(p) for p in paths],
                output_csv=output_csv,
                ransac=RansacParameters(model_type=ModelType.TRANSLATION),
                optimizer=OptimizerParameters(max_error=1.0, convergence_window=10),
                fixed_tiles=[0],
                max_workers=1,
                show_progress=False,
            )

            finished = None

            def finished_registration(result: RegistrationResult) -> None:
                nonlocal finished
                finished = result

            callbacks = ProgressCallbacks.no_op()
            callbacks.finished_registration = finished_registration
            result = Aligner(params, callbacks).run()

            self.assertIs(finished, result)
            df = pd.read_csv(output_csv)
            self.assertEqual(df["tile"].tolist(), [0, 1])
            self.assertEqual(df["file"].tolist(), [str(p) for p in paths])
            self.assertEqual(df["fixed"].tolist(), [True, False])
            self.assertEqual(df["model"].tolist(), ["translation", "translation"])
            self.assertAlmostEqual(df["m02"][1], 50.0, delta=1.0)
            self.assertAlmostEqual(df["m12"][1], 4.0, delta=1.0)

    def test_cancelled_run(self) -> None:
        with temporary_tiff_files(make_tiles()) as paths:
            params = AlignmentParameters(
                input_files=[str(p) for p in paths], max_workers=1, show_progress=False
            )
            aligner = Aligner(params)
            aligner.cancel()
            result = aligner.run()
            self.assertIsNone(result.optimization)
            self.assertEqual(result.features, [[], []])

    def test_cli(self) -> None:
        with temporary_tiff_files(make_tiles()) as paths, tempfile.TemporaryDirectory() as out:
            output_csv = pathlib.Path(out) / "transforms.csv"
            main(
                [
                    "--input-files", str(paths[0]),
                    "--input-files", str(paths[1]),
                    "--output-csv", str(output_csv),
                    "--ransac.model-type", "translation",
                    "--max-workers", "1",
                    "--no-show-progress",
                ]
            )
            df = pd.read_csv(output_csv)
            self.assertEqual(len(df), 2)


class CliTest(unittest.TestCase):
    def test_flag_spelling(self) -> None:
        with temporary_tiff_files(make_tiles()) as paths:
            params = CliApp.run(
                AlignmentParameters,
                cli_args=[
                    "--input-files", str(paths[0]),
                    "--ransac.max-epsilon", "6",
                    "--sift.max-image-size", "256",
                    "--no-show-progress",
                ],
            )
            self.assertEqual(params.input_files, [str(paths[0])])
            self.assertEqual(params.ransac.max_epsilon, 6.0)
            self.assertEqual(params.sift.max_image_size, 256)
            self.assertFalse(params.show_progress)

            with self.assertRaises(SystemExit):
                CliApp.run(AlignmentParameters, cli_args=["--input_files", str(paths[0])])


class GrayscaleTest(unittest.TestCase):
    def test_passthrough(self) -> None:
        image = np.zeros((4, 5), dtype=np.uint16)
        self.assertIs(to_grayscale(image), image)

    def test_rgb(self) -> None:
        image = np.zeros((4, 5, 3), dtype=np.uint8)
        image[..., 1] = 255
        gray = to_grayscale(image)
        self.assertEqual(gray.shape, (4, 5))
        self.assertTrue(np.all(gray > 0))

    def test_stack_projection(self) -> None:
        stack = np.zeros((3, 4, 5), dtype=np.uint16)
        stack[1, 2, 3] = 9
        projected = to_grayscale(stack)
        self.assertEqual(projected.shape, (4, 5))
        self.assertEqual(projected[2, 3], 9)
