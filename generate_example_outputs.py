#!/usr/bin/env python3
import argparse
import math
import os.path
import time

from VirtualSlideRule import Model, OutFormat, save_image


def main():
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--format',
                             choices=[f.value for f in OutFormat],
                             default=None,
                             help='Which format to render (all by default)')
    example_models = sorted(Model.example_names())
    args_parser.add_argument('--model',
                             choices=example_models,
                             default=None,
                             help='Which slide rule model (all by default)')
    cli_args = args_parser.parse_args()
    base_dir = os.path.relpath('examples/')
    os.makedirs(base_dir, exist_ok=True)
    out_formats = [next(f for f in OutFormat if f.value == cli_args.format)] if cli_args.format else OutFormat
    for model_name in ([cli_args.model] if cli_args.model else example_models):
        print(f'Building example outputs for: {model_name}')
        model = Model.load(model_name)

        for out_format in out_formats:
            try:
                start_time = time.process_time()
                slide_rule = model.build(out_format=out_format)
                at_rest_img = slide_rule.render_image()
                at_rest_filename = os.path.join(base_dir, f'{model_name}.SlideRule')
                print(f' Render time: {round(time.process_time() - start_time, 3)}')
                save_image(at_rest_img, at_rest_filename)

                # Multiplication setting: slide index over 2, cursor over 3 on the slide
                eff_w = slide_rule.config.effective_width
                slide_rule.set_slide_position(eff_w * math.log10(2))
                slide_rule.set_cursor_position(slide_rule.cursor.min_position + eff_w * math.log10(6))
                for name, value in slide_rule.readouts():
                    print(f'  {name}: {value:.2f}' if value is not None else f'  {name}: n/a')
                product_img = slide_rule.render_image()
                product_filename = os.path.join(base_dir, f'{model_name}.SlideRule.Multiply')
                save_image(product_img, product_filename)
                print(f'Time elapsed: {round(time.process_time() - start_time, 3)}')
            except ValueError as e:
                print(f'Error processing {model_name}: {e}; Skipping')


if __name__ == '__main__':
    main()
